#!/usr/bin/env python
"""Populate the development database with a demo club, fixtures and results."""
from __future__ import annotations

import argparse
from datetime import datetime, timedelta
from typing import Sequence

from pathlib import Path
import sys

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from matcharchive.app import create_app, db
from matcharchive import models
from matcharchive import teams, matches, stats


def ensure_admin_user() -> models.User:
    admin = models.User.query.filter_by(email="admin@example.com").first()
    if admin is None:
        admin = models.User(
            email="admin@example.com",
            name="Admin User",
            nickname="admin",
            position="MF",
            is_admin=True,
        )
        admin.set_password("admin123")
        db.session.add(admin)
        db.session.commit()
    return admin


def create_user(name: str, email: str, position: str, password: str = "player123") -> models.User:
    user = models.User.query.filter_by(email=email).first()
    if user is None:
        user = models.User(name=name, email=email, nickname=name.split()[0], position=position)
        user.set_password(password)
        db.session.add(user)
    return user


def ensure_team(owner: models.User, name: str, region: str, players: Sequence[models.User]) -> models.Team:
    team = models.Team.query.filter_by(name=name).first()
    if team is None:
        team = teams.create_team(
            db.session, owner, name,
            region=region,
            activity_days=["SAT", "SUN"],
            activity_time="07:00-09:00",
            hashtags="sunday league, friendly",
            is_recruiting=True,
            recruiting_positions={"DF": 2, "GK": 1},
            level=3,
        )
    for number, user in enumerate(players, start=2):
        if teams.get_membership(db.session, team.id, user.id) is None:
            db.session.add(models.TeamMember(
                team_id=team.id, user_id=user.id, role="MEMBER", status="active",
                back_number=number, positions=f'["{user.position}"]',
            ))
    db.session.commit()
    return team


def play_match(team: models.Team, owner: models.User, opponent: str, days_ago: int,
               scorers: Sequence[int], conceded: int) -> models.Match:
    """Create a finished match where ``scorers`` index into the active squad."""
    when = (datetime.now() - timedelta(days=days_ago)).replace(hour=8, minute=0, second=0, microsecond=0)
    match = matches.create_match(db.session, team, owner.id, match_date=when, opponent_name=opponent)
    squad = [m for m in teams.team_members(db.session, team.id, include_guests=False) if m.status == "active"]
    matches.save_lineup(db.session, match, [m.id for m in squad])
    for rec in match.records:
        matches.update_record(db.session, rec, quarters_played=match.quarters)
    for i, idx in enumerate(scorers):
        scorer = squad[idx % len(squad)]
        assister = squad[(idx + 1) % len(squad)]
        matches.add_goal(db.session, match, scorer_id=scorer.id, assist_id=assister.id, quarter=(i % 4) + 1)
    for i in range(conceded):
        matches.add_goal(db.session, match, scoring_team="AWAY", quarter=(i % 4) + 1)
    home, away = matches.goal_score(match)
    matches.update_match_score(db.session, match, home, away)
    matches.update_record(db.session, match.records[0], is_mom=True)
    matches.finish_match(db.session, match)
    return match


def build_sample_world(reset: bool = False) -> None:
    if reset:
        db.drop_all()
        db.create_all()
    ensure_admin_user()

    captain = create_user("Morgan Reid", "morgan@example.com", "MF", "manager123")
    player_details = [
        ("Lena Hart", "lena@example.com", "FW"),
        ("Noah Kim", "noah@example.com", "FW"),
        ("Eli Turner", "eli@example.com", "MF"),
        ("Zara Brooks", "zara@example.com", "DF"),
        ("Theo White", "theo@example.com", "DF"),
        ("Maya Singh", "maya@example.com", "GK"),
    ]
    players = [create_user(name, email, pos) for name, email, pos in player_details]
    db.session.commit()

    team = ensure_team(captain, "Riverside FC", "Seoul", players)
    if models.Match.query.filter_by(team_id=team.id).count() == 0:
        play_match(team, captain, "Hillcrest United", 28, scorers=[1, 1, 2], conceded=1)
        play_match(team, captain, "Northside Rovers", 21, scorers=[2], conceded=2)
        play_match(team, captain, "Hillcrest United", 14, scorers=[1, 3, 1, 1], conceded=0)
        play_match(team, captain, "Eastgate Athletic", 7, scorers=[0, 4], conceded=2)
        matches.create_match(
            db.session, team, captain.id,
            match_date=(datetime.now() + timedelta(days=5)).replace(hour=8, minute=0, second=0, microsecond=0),
            opponent_name="Northside Rovers",
        )
        teams.add_guest_member(db.session, team, captain.id, "Sam (friend of Noah)", back_number=99)

    for user in [captain, *players]:
        stats.award_badges(db.session, user)
    print("Database populated with demo content.")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--reset", action="store_true", help="drop and recreate the database before loading data")
    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        db.create_all()
        build_sample_world(reset=args.reset)


if __name__ == "__main__":
    main()

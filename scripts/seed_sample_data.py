#!/usr/bin/env python
"""Populate the development database with demo tournaments."""
from __future__ import annotations

import argparse
from datetime import datetime, timedelta
from typing import Sequence

from pathlib import Path
import sys

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ttportal.app import create_app, db
from ttportal import models


def ensure_tournament(name: str, city: str, t_type: str, starts_at: datetime) -> models.Tournament:
    tournament = models.Tournament.query.filter_by(name=name).first()
    if tournament is None:
        tournament = models.Tournament(name=name)
    tournament.city = city
    tournament.venue = f"{city} Sports Hall"
    tournament.year = starts_at.year
    tournament.type = t_type
    tournament.status = "published"
    tournament.starts_at = starts_at
    tournament.ends_at = starts_at + timedelta(days=2)
    db.session.add(tournament)
    db.session.commit()
    return tournament


def attach_roster(
    tournament: models.Tournament,
    players: Sequence[tuple[str, str, str]],
    gender: str,
) -> list[models.RosterEntry]:
    entries: list[models.RosterEntry] = []
    for first, last, club in players:
        entry = models.RosterEntry.query.filter_by(
            tournament_id=tournament.id, first_name=first, last_name=last
        ).first()
        if entry is None:
            entry = models.RosterEntry(
                tournament=tournament, first_name=first, last_name=last, club=club, gender=gender
            )
            db.session.add(entry)
        entries.append(entry)
    db.session.commit()
    return entries


def create_bracket(tournament: models.Tournament, entries: Sequence[models.RosterEntry], start: datetime) -> None:
    if models.Match.query.filter_by(tournament_id=tournament.id, gender=entries[0].gender).count():
        return
    pairs = [(entries[i], entries[i + 1]) for i in range(0, len(entries) - 1, 2)]
    for table_no, (a, b) in enumerate(pairs, start=1):
        db.session.add(models.Match(
            tournament_id=tournament.id,
            player_a_roster_id=a.id,
            player_b_roster_id=b.id,
            gender=a.gender,
            round="qf",
            score_summary="3-1",
            sets="11-7,9-11,11-6,11-8",
            table_no=str(table_no),
            started_at=start + timedelta(minutes=30 * table_no),
        ))
    db.session.add(models.Match(
        tournament_id=tournament.id,
        player_a_roster_id=entries[0].id,
        player_b_roster_id=entries[2].id,
        gender=entries[0].gender,
        round="sf",
        score_summary="3-2",
        sets="11-8,9-11,11-9,8-11,11-7",
        table_no="1",
        started_at=start + timedelta(hours=4),
    ))
    db.session.commit()


def create_ranking(tournament: models.Tournament, entries: Sequence[models.RosterEntry], event: str) -> None:
    if models.RankingEntry.query.filter_by(tournament_id=tournament.id).count():
        return
    for position, entry in enumerate(entries[:4], start=1):
        db.session.add(models.RankingEntry(
            tournament=tournament,
            position=position,
            athlete_display=entry.full_name,
            club=entry.club,
            gender=entry.gender,
            event=event,
        ))
    db.session.commit()


def create_media(tournament: models.Tournament, event: str) -> None:
    if models.MediaItem.query.filter_by(tournament_id=tournament.id).count():
        return
    for i in range(1, 7):
        db.session.add(models.MediaItem(
            tournament=tournament,
            type="image",
            url=f"https://picsum.photos/seed/tt{tournament.id}-{i}/800/1000",
            caption=f"{event} · photo {i}",
            credit="Organizer",
            is_cover=i == 1,
            event=event,
        ))
    db.session.commit()


def build_sample_world(reset: bool = False) -> None:
    if reset:
        db.drop_all()
        db.create_all()

    men = [
        ("Ahmet", "Yılmaz", "İstanbul BŞB"),
        ("Mehmet", "Kaya", "Galatasaray"),
        ("Emre", "Demir", "Fenerbahçe"),
        ("Can", "Şahin", "Ankara Gençlik"),
        ("Burak", "Çelik", "İzmir TTK"),
        ("Oğuz", "Aydın", "Bursa Spor"),
        ("Kerem", "Öztürk", "Galatasaray"),
        ("Mert", "Arslan", "İstanbul BŞB"),
    ]
    women = [
        ("Elif", "Koç", "Fenerbahçe"),
        ("Zeynep", "Kurt", "İzmir TTK"),
        ("Ayşe", "Polat", "Ankara Gençlik"),
        ("Selin", "Güneş", "Galatasaray"),
    ]

    now = datetime.now().replace(minute=0, second=0, microsecond=0)
    open_cup = ensure_tournament("Istanbul Open", "İstanbul", "official", now - timedelta(days=14))
    club_cup = ensure_tournament("Ege Club Cup", "İzmir", "private", now + timedelta(days=21))

    men_entries = attach_roster(open_cup, men, "M")
    women_entries = attach_roster(open_cup, women, "F")
    create_bracket(open_cup, men_entries, open_cup.starts_at)
    create_bracket(open_cup, women_entries, open_cup.starts_at + timedelta(hours=1))
    create_ranking(open_cup, men_entries, "Men's Singles")
    create_media(open_cup, "Men's Singles")

    attach_roster(club_cup, men[:4], "M")
    attach_roster(club_cup, women[:2], "F")

    print("Sample data loaded.")


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

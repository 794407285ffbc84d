from .app import db
from flask_login import UserMixin
from datetime import datetime
from sqlalchemy import event, select

GENDERS = ('M', 'F')
TOURNAMENT_TYPES = ('official', 'private')
TOURNAMENT_STATUSES = ('draft', 'published', 'completed')
MEDIA_TYPES = ('image', 'video')

# Round codes in bracket order, with display labels
ROUNDS = (
    ('group', 'Group'),
    ('r32', 'Round of 32'),
    ('r16', 'Round of 16'),
    ('qf', 'Quarter-final'),
    ('sf', 'Semi-final'),
    ('f', 'Final'),
)
ROUND_CODES = tuple(code for code, _ in ROUNDS)


class AdminUser(UserMixin):
    """The single identity behind the shared admin token."""

    id = 'admin'
    name = 'Admin'


class Tournament(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(200), unique=True, nullable=True)
    name = db.Column(db.String(200), nullable=False)
    year = db.Column(db.Integer, nullable=True)
    city = db.Column(db.String(120), nullable=True)
    venue = db.Column(db.String(200), nullable=True)
    type = db.Column(db.String(20), nullable=False, default='private')  # official or private
    status = db.Column(db.String(20), nullable=False, default='draft')  # draft, published, completed
    starts_at = db.Column(db.DateTime, nullable=True)
    ends_at = db.Column(db.DateTime, nullable=True)
    poster_url = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def label(self):
        """Short one-line description used in selectors."""
        year = f" ({self.year})" if self.year else ''
        return f"{self.name}{year} · {self.city or '—'} · {self.status}"

    def date_range(self):
        start = self.starts_at.strftime('%d.%m.%Y') if self.starts_at else ''
        end = self.ends_at.strftime('%d.%m.%Y') if self.ends_at else ''
        if start and end:
            return f"{start} – {end}"
        return start or end


class RosterEntry(db.Model):
    __tablename__ = 'tournament_roster'
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournament.id'), nullable=False)
    first_name = db.Column(db.String(120), nullable=False)
    last_name = db.Column(db.String(120), nullable=False)
    club = db.Column(db.String(200), nullable=True)
    gender = db.Column(db.String(1), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    tournament = db.relationship(
        'Tournament',
        backref=db.backref('roster', cascade='all, delete-orphan')
    )

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"


class Match(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournament.id'), nullable=False)
    gender = db.Column(db.String(1), nullable=True)
    round = db.Column(db.String(50), nullable=True)
    player_a_roster_id = db.Column(db.Integer, db.ForeignKey('tournament_roster.id'), nullable=False)
    player_b_roster_id = db.Column(db.Integer, db.ForeignKey('tournament_roster.id'), nullable=False)
    score_summary = db.Column(db.String(50), nullable=True)  # e.g. 3-2
    sets = db.Column(db.String(200), nullable=True)  # e.g. 11-8,9-11,11-9
    table_no = db.Column(db.String(20), nullable=True)
    started_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    tournament = db.relationship(
        'Tournament',
        backref=db.backref('matches', cascade='all, delete-orphan')
    )
    player_a = db.relationship('RosterEntry', foreign_keys=[player_a_roster_id])
    player_b = db.relationship('RosterEntry', foreign_keys=[player_b_roster_id])


class RankingEntry(db.Model):
    __tablename__ = 'ranking'
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournament.id'), nullable=False)
    gender = db.Column(db.String(1), nullable=True)
    event = db.Column(db.String(200), nullable=True)
    position = db.Column(db.Integer, nullable=False)
    # Free text: a single athlete or a doubles pair such as "A / B"
    athlete_display = db.Column(db.String(300), nullable=False)
    club = db.Column(db.String(200), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    tournament = db.relationship(
        'Tournament',
        backref=db.backref('ranking', cascade='all, delete-orphan')
    )


class MediaItem(db.Model):
    __tablename__ = 'media'
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournament.id'), nullable=False)
    type = db.Column(db.String(10), nullable=False, default='image')
    url = db.Column(db.String(1000), nullable=False)
    caption = db.Column(db.String(300), nullable=True)
    credit = db.Column(db.String(200), nullable=True)
    is_cover = db.Column(db.Boolean, default=False)
    gender = db.Column(db.String(1), nullable=True)
    event = db.Column(db.String(200), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    tournament = db.relationship(
        'Tournament',
        backref=db.backref('media', cascade='all, delete-orphan')
    )


class SiteLog(db.Model):
    __bind_key__ = 'logs'
    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(200), nullable=False)
    result = db.Column(db.String(200), nullable=False)
    error = db.Column(db.Text, nullable=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)


class TournamentLog(db.Model):
    __bind_key__ = 'logs'
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, nullable=False)
    action = db.Column(db.String(200), nullable=False)
    result = db.Column(db.String(200), nullable=False)
    error = db.Column(db.Text, nullable=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)


@event.listens_for(Match, 'before_insert')
@event.listens_for(Match, 'before_update')
def _players_share_tournament(mapper, connection, target):
    """Both players of a match must be roster entries of the match's tournament."""
    ids = {target.player_a_roster_id, target.player_b_roster_id}
    rows = connection.execute(
        select(RosterEntry.id, RosterEntry.tournament_id).where(RosterEntry.id.in_(ids))
    ).all()
    found = {row.id: row.tournament_id for row in rows}
    for rid in ids:
        if found.get(rid) != target.tournament_id:
            raise ValueError(f"Roster entry {rid} does not belong to tournament {target.tournament_id}")

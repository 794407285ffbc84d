"""Bulk import of roster, match, ranking and media sheets.

Roster and match sheets go through two steps. The operator first uploads a
file that is staged on disk and analyzed for sheets and headers, then maps
source columns to destination fields and commits. Ranking and media sheets
use fixed header names and are imported in a single step.

Every import is all-or-nothing: rows are validated first, any row issue
rejects the batch with a report naming the offending lines, and valid batches
are inserted in chunks inside a single transaction.
"""

import json
import os
import re
import time
import unicodedata
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from rapidfuzz import fuzz, process

from .app import db
from .models import MEDIA_TYPES, ROUND_CODES, MediaItem, Match, RankingEntry, RosterEntry, Tournament
from .spreadsheets import ImportFailure, SheetData, SheetInfo, Upload, introspect, read_sheet
from .values import to_bool, to_datetime, to_gender, to_int, to_str

KINDS = ('roster', 'matches', 'ranking', 'media')
TWO_STEP_KINDS = ('roster', 'matches')

ROSTER_FIELDS = ('full', 'first', 'last', 'club')
MATCH_FIELDS = (
    'a_full', 'a_first', 'a_last', 'a_club',
    'b_full', 'b_first', 'b_last', 'b_club',
    'round', 'score', 'sets', 'table', 'time',
)
FIELDS_BY_KIND = {'roster': ROSTER_FIELDS, 'matches': MATCH_FIELDS}

RANKING_HEADERS = ('position', 'athlete_display', 'event', 'club')
MEDIA_HEADERS = ('type', 'url', 'caption', 'credit', 'is_cover', 'event', 'created_at')

# Downloadable example sheets, header row first
TEMPLATE_ROWS = {
    'roster': [
        ['full_name', 'club'],
        ['Ahmet Yılmaz', 'İstanbul BŞB'],
        ['Mehmet Kaya', 'Galatasaray'],
    ],
    'matches': [
        ['player_a', 'player_b', 'round', 'score_summary', 'sets', 'table_no', 'started_at', 'a_club', 'b_club'],
        ['Ahmet Yılmaz', 'Mehmet Kaya', 'sf', '3-2', '11-8,9-11,11-9,8-11,11-7', '2', '2025-09-01 15:30', '', ''],
    ],
    'ranking': [
        list(RANKING_HEADERS),
        [1, 'Ahmet Yılmaz', 'Open Singles', 'İstanbul BŞB'],
    ],
    'media': [
        list(MEDIA_HEADERS),
        ['image', 'https://picsum.photos/seed/p1/800/1000', 'Podium', 'Org', True, 'Open Singles', '2025-09-01 18:00'],
    ],
}

DEFAULT_CHUNK_SIZE = 500
DEFAULT_MAX_ISSUES = 100
DEFAULT_FUZZY_THRESHOLD = 90
SUGGESTION_CUTOFF = 60
STAGING_TTL_SECONDS = 24 * 3600

ROSTER_REJECTED = (
    "Incomplete or malformed rows found. Nothing was saved.\n"
    "Hint: write full names as 'Last, First' or 'First Last', "
    "or map the first and last name columns separately."
)
MATCHES_REJECTED = (
    "Unmatched or ambiguous rows found. Nothing was saved.\n"
    "Hint: spell names exactly as in the roster or map the club hint columns (a_club/b_club)."
)


class MappingError(ImportFailure):
    pass


class StagedUploadMissing(ImportFailure):
    def __init__(self, upload_id=None):
        super().__init__("The analyzed file is no longer available. Please analyze it again.")
        self.upload_id = upload_id


class RowValidationError(ImportFailure):
    """Aggregated per-row issues; the whole batch is rejected."""

    def __init__(self, issues, header, max_issues=DEFAULT_MAX_ISSUES):
        self.issues = list(issues)
        self.header = header
        self.max_issues = max_issues
        super().__init__(self.report())

    def report(self):
        shown = self.issues[:self.max_issues]
        lines = [self.header, ''] + shown
        hidden = len(self.issues) - len(shown)
        if hidden > 0:
            lines.append(f"... and {hidden} more")
        return '\n'.join(lines)


# ---------- names ----------

def norm(value):
    """Case, accent and whitespace insensitive key for names and clubs.

    Lower-casing follows Turkish rules (I -> ı, İ -> i) and the dotless ı is
    then folded to i so that names typed without Turkish letters still match.
    """
    if not value:
        return ''
    s = str(value).replace('I', 'ı').replace('İ', 'i').lower()
    s = unicodedata.normalize('NFD', s)
    s = ''.join(ch for ch in s if not unicodedata.combining(ch))
    s = s.replace('ı', 'i')
    return ' '.join(s.split())


def split_full_name(full):
    """Split "Last, First" or "First Middle Last" into (first, last)."""
    s = (full or '').strip()
    if not s:
        return '', ''
    if ',' in s:
        # anything after a second comma (suffixes) is dropped
        parts = s.split(',')
        return parts[1].strip(), parts[0].strip()
    parts = s.split()
    if len(parts) < 2:
        return s, ''
    return ' '.join(parts[:-1]), parts[-1]


@dataclass
class Resolution:
    roster_id: Optional[int] = None
    reason: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)

    @property
    def ok(self):
        return self.roster_id is not None

    def describe(self):
        if self.suggestions:
            return f"{self.reason} (did you mean: {', '.join(self.suggestions)}?)"
        return self.reason


class RosterIndex:
    """Lookup of roster identities by normalized "first last" and "last first"."""

    def __init__(self, entries, fuzzy_threshold=DEFAULT_FUZZY_THRESHOLD):
        self.fuzzy_threshold = fuzzy_threshold
        self.entries = {}
        self.by_key: Dict[str, List[int]] = {}
        for entry in entries:
            self.entries[entry.id] = entry
            self._add(f"{entry.first_name} {entry.last_name}", entry.id)
            self._add(f"{entry.last_name} {entry.first_name}", entry.id)
        self.keys = list(self.by_key)

    @classmethod
    def for_tournament(cls, tournament_id, gender=None, fuzzy_threshold=DEFAULT_FUZZY_THRESHOLD):
        query = db.session.query(RosterEntry).filter_by(tournament_id=tournament_id)
        if gender:
            query = query.filter(RosterEntry.gender == gender)
        return cls(query.order_by(RosterEntry.id).all(), fuzzy_threshold=fuzzy_threshold)

    def _add(self, name, roster_id):
        ids = self.by_key.setdefault(norm(name), [])
        if roster_id not in ids:
            ids.append(roster_id)

    def _pick(self, candidates, club_hint):
        if len(candidates) == 1:
            return Resolution(roster_id=candidates[0])
        if club_hint:
            wanted = norm(club_hint)
            for rid in candidates:
                if norm(self.entries[rid].club) == wanted:
                    return Resolution(roster_id=rid)
        return Resolution(reason='multiple matches')

    def _fuzzy_candidates(self, key):
        if not self.fuzzy_threshold or not self.keys:
            return []
        hits = process.extract(
            key, self.keys, scorer=fuzz.token_sort_ratio,
            score_cutoff=self.fuzzy_threshold, limit=None,
        )
        if not hits:
            return []
        best = max(score for _, score, _ in hits)
        candidates = []
        for choice, score, _ in hits:
            if score != best:
                continue
            for rid in self.by_key[choice]:
                if rid not in candidates:
                    candidates.append(rid)
        return candidates

    def suggestions(self, key, limit=3):
        seen = []
        hits = process.extract(
            key, self.keys, scorer=fuzz.token_sort_ratio,
            score_cutoff=SUGGESTION_CUTOFF, limit=limit * 2,
        )
        for choice, _, _ in hits:
            for rid in self.by_key[choice]:
                name = self.entries[rid].full_name
                if name not in seen:
                    seen.append(name)
        return seen[:limit]

    def resolve(self, full_name, club_hint=None):
        key = norm(full_name)
        if not key:
            return Resolution(reason='empty name')
        candidates = self.by_key.get(key)
        if candidates:
            return self._pick(candidates, club_hint)
        candidates = self._fuzzy_candidates(key)
        if candidates:
            return self._pick(candidates, club_hint)
        return Resolution(reason='no match', suggestions=self.suggestions(key))


# ---------- column mapping ----------

class ColumnPicker:
    def __init__(self, sheet: SheetData):
        self.index = sheet.column_index()

    def __call__(self, cells, column):
        if not column or column not in self.index:
            return None
        return to_str(cells[self.index[column]])


class FixedHeaders:
    """Case-insensitive access to cells by fixed header names."""

    def __init__(self, sheet: SheetData):
        self.index = {}
        for i, header in enumerate(sheet.headers):
            self.index.setdefault(header.strip().lower(), i)

    def __call__(self, cells, name):
        i = self.index.get(name)
        if i is None:
            return None
        return to_str(cells[i])


def mapping_from_form(form, kind):
    return {f: to_str(form.get(f'map_{f}')) for f in FIELDS_BY_KIND[kind]}


def _has_name_columns(mapping, prefix=''):
    return bool(mapping.get(f'{prefix}full') or (mapping.get(f'{prefix}first') and mapping.get(f'{prefix}last')))


def validate_mapping(kind, mapping):
    if kind == 'roster' and not _has_name_columns(mapping):
        raise MappingError("Select a full name column or both first and last name columns.")
    if kind == 'matches':
        if not _has_name_columns(mapping, 'a_'):
            raise MappingError("Player A needs a full name column or first and last name columns.")
        if not _has_name_columns(mapping, 'b_'):
            raise MappingError("Player B needs a full name column or first and last name columns.")


def normalize_round(value):
    s = to_str(value)
    if s is None:
        return None
    code = s.lower()
    return code if code in ROUND_CODES else s


# ---------- row builders ----------

def build_roster_rows(sheet, mapping, tournament_id, gender=None, max_issues=DEFAULT_MAX_ISSUES):
    validate_mapping('roster', mapping)
    pick = ColumnPicker(sheet)
    rows, issues = [], []
    for row in sheet.rows:
        if mapping.get('full'):
            first, last = split_full_name(pick(row.cells, mapping['full']) or '')
        else:
            first = pick(row.cells, mapping.get('first')) or ''
            last = pick(row.cells, mapping.get('last')) or ''
        if not first or not last:
            issues.append(f"Row {row.line}: first/last name missing (first='{first}' last='{last}')")
            continue
        rows.append({
            'tournament_id': tournament_id,
            'first_name': first,
            'last_name': last,
            'gender': gender,
            'club': pick(row.cells, mapping.get('club')),
        })
    if issues:
        raise RowValidationError(issues, ROSTER_REJECTED, max_issues)
    return rows


def _player_name(pick, cells, mapping, prefix):
    if mapping.get(f'{prefix}full'):
        return pick(cells, mapping[f'{prefix}full'])
    parts = [pick(cells, mapping.get(f'{prefix}first')), pick(cells, mapping.get(f'{prefix}last'))]
    return ' '.join(p for p in parts if p) or None


def build_match_rows(sheet, mapping, index, tournament_id, gender=None, max_issues=DEFAULT_MAX_ISSUES):
    validate_mapping('matches', mapping)
    pick = ColumnPicker(sheet)
    rows, issues = [], []
    for row in sheet.rows:
        a_name = _player_name(pick, row.cells, mapping, 'a_')
        b_name = _player_name(pick, row.cells, mapping, 'b_')
        a = index.resolve(a_name, pick(row.cells, mapping.get('a_club')))
        b = index.resolve(b_name, pick(row.cells, mapping.get('b_club')))
        if not a.ok or not b.ok:
            problems = []
            if not a.ok:
                problems.append(f"A[{a_name or ''}] -> {a.describe()}")
            if not b.ok:
                problems.append(f"B[{b_name or ''}] -> {b.describe()}")
            issues.append(f"Row {row.line}: {' | '.join(problems)}")
            continue
        if a.roster_id == b.roster_id:
            issues.append(f"Row {row.line}: A and B are the same player ({a_name} / {b_name})")
            continue
        rows.append({
            'tournament_id': tournament_id,
            'player_a_roster_id': a.roster_id,
            'player_b_roster_id': b.roster_id,
            'gender': gender,
            'round': normalize_round(pick(row.cells, mapping.get('round'))),
            'score_summary': pick(row.cells, mapping.get('score')),
            'sets': pick(row.cells, mapping.get('sets')),
            'table_no': pick(row.cells, mapping.get('table')),
            'started_at': to_datetime(pick(row.cells, mapping.get('time'))),
        })
    if issues:
        raise RowValidationError(issues, MATCHES_REJECTED, max_issues)
    return rows


def build_ranking_rows(sheet, tournament_id, gender=None):
    get = FixedHeaders(sheet)
    rows = []
    for row in sheet.rows:
        position = to_int(get(row.cells, 'position'))
        athlete = get(row.cells, 'athlete_display')
        if not position or position < 1 or not athlete:
            continue
        rows.append({
            'tournament_id': tournament_id,
            'position': position,
            'athlete_display': athlete,
            'gender': gender,
            'event': get(row.cells, 'event'),
            'club': get(row.cells, 'club'),
        })
    return rows


def build_media_rows(sheet, tournament_id, gender=None):
    get = FixedHeaders(sheet)
    rows = []
    for row in sheet.rows:
        url = get(row.cells, 'url')
        if not url:
            continue
        media_type = (get(row.cells, 'type') or '').lower()
        item = {
            'tournament_id': tournament_id,
            'type': media_type if media_type in MEDIA_TYPES else 'image',
            'url': url,
            'caption': get(row.cells, 'caption'),
            'credit': get(row.cells, 'credit'),
            'is_cover': bool(to_bool(get(row.cells, 'is_cover'))),
            'gender': gender,
            'event': get(row.cells, 'event'),
        }
        created_at = to_datetime(get(row.cells, 'created_at'))
        if created_at:
            item['created_at'] = created_at
        rows.append(item)
    return rows


def insert_chunked(model, rows, chunk_size=DEFAULT_CHUNK_SIZE):
    """Add ``rows`` in chunks, flushing each; the caller owns the commit."""
    inserted = 0
    for start in range(0, len(rows), chunk_size):
        chunk = rows[start:start + chunk_size]
        db.session.add_all([model(**values) for values in chunk])
        db.session.flush()
        inserted += len(chunk)
    return inserted


# ---------- staging ----------

_UPLOAD_ID = re.compile(r'^[0-9a-f]{32}$')


class UploadStaging:
    """Keeps analyzed uploads on disk between the analyze and commit steps."""

    def __init__(self, directory, ttl=STAGING_TTL_SECONDS):
        self.directory = directory
        self.ttl = ttl

    def _paths(self, upload_id):
        if not upload_id or not _UPLOAD_ID.match(upload_id):
            raise StagedUploadMissing(upload_id)
        base = os.path.join(self.directory, upload_id)
        return base + '.bin', base + '.json'

    def stage(self, upload: Upload, meta):
        os.makedirs(self.directory, exist_ok=True)
        self.purge_expired()
        upload_id = uuid.uuid4().hex
        data_path, meta_path = self._paths(upload_id)
        with open(data_path, 'wb') as fh:
            fh.write(upload.data)
        payload = dict(meta, filename=upload.filename, content_type=upload.content_type)
        with open(meta_path, 'w', encoding='utf-8') as fh:
            json.dump(payload, fh, ensure_ascii=False)
        return upload_id

    def meta(self, upload_id):
        _, meta_path = self._paths(upload_id)
        try:
            with open(meta_path, encoding='utf-8') as fh:
                return json.load(fh)
        except (OSError, ValueError):
            raise StagedUploadMissing(upload_id)

    def load(self, upload_id):
        data_path, _ = self._paths(upload_id)
        meta = self.meta(upload_id)
        try:
            with open(data_path, 'rb') as fh:
                data = fh.read()
        except OSError:
            raise StagedUploadMissing(upload_id)
        return Upload(filename=meta.get('filename', ''), data=data, content_type=meta.get('content_type', '')), meta

    def discard(self, upload_id):
        if not upload_id or not _UPLOAD_ID.match(upload_id):
            return
        for path in self._paths(upload_id):
            if os.path.exists(path):
                os.remove(path)

    def purge_expired(self):
        if not os.path.isdir(self.directory):
            return
        cutoff = time.time() - self.ttl
        for name in os.listdir(self.directory):
            path = os.path.join(self.directory, name)
            if os.path.isfile(path) and os.path.getmtime(path) < cutoff:
                os.remove(path)


# ---------- orchestration ----------

@dataclass
class ImportRequest:
    kind: str
    tournament_id: Optional[int]
    gender: Optional[str] = None
    delimiter: str = ','
    sheet_name: Optional[str] = None
    mapping: Dict[str, Optional[str]] = field(default_factory=dict)

    @classmethod
    def from_form(cls, kind, form):
        return cls(
            kind=kind,
            tournament_id=to_int(form.get('tournament_id')),
            gender=to_gender(form.get('gender_sel')),
            delimiter=form.get('delimiter') or ',',
            sheet_name=to_str(form.get('sheet_name')),
            mapping=mapping_from_form(form, kind) if kind in FIELDS_BY_KIND else {},
        )


def require_tournament(tournament_id):
    if not tournament_id:
        raise ImportFailure("Tournament ID is required.")
    tournament = db.session.get(Tournament, tournament_id)
    if not tournament:
        raise ImportFailure(f"Tournament {tournament_id} not found.")
    return tournament


def analyze(upload: Upload, delimiter=',') -> SheetInfo:
    if upload is None:
        raise ImportFailure("No file selected.")
    return introspect(upload, delimiter)


def run_import(request: ImportRequest, upload: Upload, chunk_size=DEFAULT_CHUNK_SIZE,
               max_issues=DEFAULT_MAX_ISSUES, fuzzy_threshold=DEFAULT_FUZZY_THRESHOLD):
    """Validate and insert one sheet; returns the number of inserted rows.

    Nothing is committed here. Any exception leaves the session to be rolled
    back by the caller.
    """
    if request.kind not in KINDS:
        raise ImportFailure(f"Unknown import kind: {request.kind}")
    tournament = require_tournament(request.tournament_id)
    if upload is None:
        raise ImportFailure("No file selected.")
    if request.kind in FIELDS_BY_KIND:
        validate_mapping(request.kind, request.mapping)
    sheet = read_sheet(upload, request.sheet_name, request.delimiter)

    if request.kind == 'roster':
        rows = build_roster_rows(sheet, request.mapping, tournament.id, request.gender, max_issues)
        model = RosterEntry
    elif request.kind == 'matches':
        index = RosterIndex.for_tournament(tournament.id, request.gender, fuzzy_threshold)
        rows = build_match_rows(sheet, request.mapping, index, tournament.id, request.gender, max_issues)
        model = Match
    elif request.kind == 'ranking':
        rows = build_ranking_rows(sheet, tournament.id, request.gender)
        model = RankingEntry
    else:
        rows = build_media_rows(sheet, tournament.id, request.gender)
        model = MediaItem
    return insert_chunked(model, rows, chunk_size)

import math
from dataclasses import dataclass
from urllib.parse import urlencode

from sqlalchemy.exc import SQLAlchemyError

from .models import GENDERS

MATCHES_PAGE_SIZE = 20
RANKING_PAGE_SIZE = 50
MEDIA_PAGE_SIZE = 24


def parse_page(value):
    try:
        page = int(value or 1)
    except (TypeError, ValueError):
        return 1
    return max(1, page)


def gender_filter(value):
    return value if value in GENDERS else None


@dataclass
class Pager:
    page: int
    page_size: int
    total: int = 0

    @property
    def offset(self):
        return (self.page - 1) * self.page_size

    @property
    def total_pages(self):
        return max(1, math.ceil(self.total / self.page_size))

    @property
    def has_prev(self):
        return self.page > 1

    @property
    def has_next(self):
        return self.page < self.total_pages


def query_string(current, **patch):
    """Merge ``patch`` into ``current`` args and render "?a=b", dropping empty values."""
    merged = dict(current)
    merged.update(patch)
    params = [(k, str(v)) for k, v in merged.items() if v is not None and v != '']
    return f"?{urlencode(params)}" if params else ''


def guarded(session, ui_errors, label, load, default):
    """Run one page query; a database failure becomes a message instead of a 500."""
    try:
        return load()
    except SQLAlchemyError as e:
        session.rollback()
        ui_errors.append(f"{label}: {e}")
        return default

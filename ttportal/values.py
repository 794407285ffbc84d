from datetime import datetime, timezone
import math
import re

TRUE_WORDS = ('1', 'true', 'yes', 'evet', 'on')

DATETIME_FORMATS = (
    '%Y-%m-%d %H:%M',
    '%Y-%m-%d %H:%M:%S',
    '%Y-%m-%dT%H:%M',
    '%Y-%m-%dT%H:%M:%S',
    '%Y-%m-%d',
    '%d.%m.%Y %H:%M',
    '%d.%m.%Y',
    '%d/%m/%Y %H:%M',
    '%d/%m/%Y',
)


def to_str(value):
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def to_num(value):
    s = to_str(value)
    if s is None:
        return None
    if s.count(',') + s.count('.') > 1:
        return None
    if re.fullmatch(r'[-+]?\d{1,3},\d{3}', s):
        # "1,000" is a thousands separator, not a decimal comma
        return None
    try:
        n = float(s.replace(',', '.'))
    except ValueError:
        return None
    if not math.isfinite(n):
        return None
    return n


def to_int(value):
    n = to_num(value)
    if n is None or not n.is_integer():
        return None
    return int(n)


def to_bool(value):
    s = to_str(value)
    if s is None:
        return None
    return s.lower() in TRUE_WORDS


def to_gender(value):
    s = to_str(value)
    if s and s.upper() in ('M', 'F'):
        return s.upper()
    return None


def to_datetime(value):
    """Parse the date formats seen in forms and spreadsheets; None when unparseable."""
    if isinstance(value, datetime):
        return value
    s = to_str(value)
    if s is None:
        return None
    candidates = [s]
    if s.endswith('Z'):
        candidates.append(s[:-1] + '+00:00')
    if 'T' not in s and ' ' in s:
        candidates.append(s.replace(' ', 'T'))
    for candidate in candidates:
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError:
            continue
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    for fmt in DATETIME_FORMATS:
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue
    return None

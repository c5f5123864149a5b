"""
Date Utilities
==============

Centralized date handling for draw dates. Every draw is keyed by a canonical
Gregorian `YYYY-MM-DD` string; sources may express years in the Buddhist Era
(543 years ahead), so all inputs pass through here before touching storage.
"""

import re
from datetime import datetime, date, timedelta
from typing import Optional, Any

import pytz
from loguru import logger

from src.errors import InvalidDate


class DateManager:
    """
    Centralized manager for draw-date operations.

    - Timezone standardized on Asia/Bangkok (draws are announced in Thailand)
    - Buddhist Era <-> Gregorian conversion
    - Strict validation of canonical ISO dates
    """

    DRAW_TIMEZONE = pytz.timezone('Asia/Bangkok')

    BUDDHIST_ERA_OFFSET = 543
    # Any year at or above this is taken to be a Buddhist Era year.
    BUDDHIST_ERA_THRESHOLD = 2400

    ISO_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')
    INPUT_PATTERN = re.compile(r'^(\d{4})[-/](\d{1,2})[-/](\d{1,2})$')
    STORAGE_PATH_PATTERN = re.compile(r'lottery_pdfs/(\d{4}-\d{2}-\d{2})(?![\d])')

    THAI_MONTHS = {
        'มกราคม': 1,
        'กุมภาพันธ์': 2,
        'มีนาคม': 3,
        'เมษายน': 4,
        'พฤษภาคม': 5,
        'มิถุนายน': 6,
        'กรกฎาคม': 7,
        'สิงหาคม': 8,
        'กันยายน': 9,
        'ตุลาคม': 10,
        'พฤศจิกายน': 11,
        'ธันวาคม': 12,
    }

    THAI_DRAW_DATE_PATTERN = re.compile(
        r'(งวดวันที่|ประจำงวดวันที่|ประกาศผลวันที่)\s*([0-3]?\d)\s*('
        + '|'.join(THAI_MONTHS.keys())
        + r')\s*(\d{4})'
    )

    @classmethod
    def get_current_time(cls, tz_name: Optional[str] = None) -> datetime:
        """Current time in the draw timezone (or the given one)."""
        tz = pytz.timezone(tz_name) if tz_name else cls.DRAW_TIMEZONE
        return datetime.now(pytz.UTC).astimezone(tz)

    @classmethod
    def ensure_iso_date(cls, value: Any) -> str:
        """
        Validate a canonical draw date.

        Args:
            value: Candidate value, expected `YYYY-MM-DD`

        Returns:
            str: The trimmed date

        Raises:
            InvalidDate: If the value is not a string in canonical form or is not
                a real calendar date
        """
        if not isinstance(value, str):
            raise InvalidDate('Missing date')
        trimmed = value.strip()
        if not cls.ISO_PATTERN.match(trimmed):
            raise InvalidDate(f'Unexpected date format: {trimmed}')
        try:
            datetime.strptime(trimmed, '%Y-%m-%d')
        except ValueError as e:
            raise InvalidDate(f'Invalid calendar date: {trimmed}') from e
        return trimmed

    @classmethod
    def normalize_date_input(cls, raw: Any) -> str:
        """
        Convert a user- or source-supplied date to canonical `YYYY-MM-DD`.

        Accepts `YYYY-MM-DD` or `YYYY/MM/DD` with one- or two-digit month and day.
        Years >= 2400 are Buddhist Era and have 543 subtracted.

        Raises:
            InvalidDate: On any other shape
        """
        text = str(raw if raw is not None else '').strip()
        if not text:
            raise InvalidDate('Missing date')

        match = cls.INPUT_PATTERN.match(text)
        if not match:
            raise InvalidDate('Unsupported date format (use YYYY-MM-DD or YYYY/MM/DD)')

        year, month, day = (int(part) for part in match.groups())
        if year >= cls.BUDDHIST_ERA_THRESHOLD:
            year -= cls.BUDDHIST_ERA_OFFSET

        iso = f'{year:04d}-{month:02d}-{day:02d}'
        return cls.ensure_iso_date(iso)

    @classmethod
    def buddhist_year(cls, gregorian_year: int) -> int:
        return gregorian_year + cls.BUDDHIST_ERA_OFFSET

    @classmethod
    def cutoff_iso(cls, days: int, now: Optional[datetime] = None, tz_name: Optional[str] = None) -> str:
        """
        First date (inclusive) of a rolling window of `days` ending today.

        Args:
            days: Window length in days
            now: Reference time (defaults to current time in the draw timezone)
            tz_name: Timezone override

        Returns:
            str: Cutoff date as `YYYY-MM-DD`
        """
        reference = now or cls.get_current_time(tz_name)
        cutoff = reference.date() - timedelta(days=days)
        logger.debug(f"Cutoff for {days}-day window: {cutoff.isoformat()}")
        return cutoff.isoformat()

    @classmethod
    def is_within_or_after(cls, date_iso: str, cutoff_iso: str) -> bool:
        # Canonical ISO dates compare lexicographically.
        return date_iso >= cutoff_iso

    @classmethod
    def to_day_month_year(cls, date_iso: str) -> dict:
        """Split a canonical date into the {date, month, year} request shape."""
        iso = cls.ensure_iso_date(date_iso)
        year, month, day = iso.split('-')
        return {'date': day, 'month': month, 'year': year}

    @classmethod
    def extract_draw_date_from_thai_text(cls, text: str) -> Optional[str]:
        """
        Detect the draw date printed on an official result sheet.

        Looks for phrases such as "งวดวันที่ 16 มิถุนายน 2567".

        Returns:
            Optional[str]: Canonical date, or None if no date phrase is found
        """
        from src.text_utils import normalize_text

        match = cls.THAI_DRAW_DATE_PATTERN.search(normalize_text(text))
        if not match:
            return None

        day = int(match.group(2))
        month = cls.THAI_MONTHS[match.group(3)]
        year = int(match.group(4))
        if year >= cls.BUDDHIST_ERA_THRESHOLD:
            year -= cls.BUDDHIST_ERA_OFFSET

        try:
            return cls.ensure_iso_date(f'{year:04d}-{month:02d}-{day:02d}')
        except InvalidDate:
            logger.debug(f"Detected draw date phrase is not a real date: {match.group(0)}")
            return None

    @classmethod
    def date_from_storage_path(cls, object_name: str) -> Optional[str]:
        """Recover the draw date from `lottery_pdfs/YYYY-MM-DD_<key>.pdf`."""
        match = cls.STORAGE_PATH_PATTERN.search(str(object_name or ''))
        if not match:
            return None
        try:
            return cls.ensure_iso_date(match.group(1))
        except InvalidDate:
            return None

    @classmethod
    def iso_from_date(cls, value: date) -> str:
        return value.strftime('%Y-%m-%d')


def normalize_date_input(raw: Any) -> str:
    """Convenience wrapper for DateManager.normalize_date_input."""
    return DateManager.normalize_date_input(raw)


def ensure_iso_date(value: Any) -> str:
    """Convenience wrapper for DateManager.ensure_iso_date."""
    return DateManager.ensure_iso_date(value)


def cutoff_iso(days: int, now: Optional[datetime] = None, tz_name: Optional[str] = None) -> str:
    return DateManager.cutoff_iso(days, now=now, tz_name=tz_name)


def buddhist_year(gregorian_year: int) -> int:
    return DateManager.buddhist_year(gregorian_year)


def extract_draw_date_from_thai_text(text: str) -> Optional[str]:
    return DateManager.extract_draw_date_from_thai_text(text)


def date_from_storage_path(object_name: str) -> Optional[str]:
    return DateManager.date_from_storage_path(object_name)


logger.debug(f"Date utilities loaded - draw timezone: {DateManager.DRAW_TIMEZONE}")

from __future__ import annotations

from datetime import date, datetime
from typing import Union

from dateutil import parser as date_parser


def parse_us_date(value: str) -> date:
    """
    Parse dates like:
    - "12/26/1985"
    - "1985-12-26"
    - "Dec 26, 1985"
    """
    if value is None:
        raise ValueError("parse_us_date: value is None")
    s = value.strip()
    if not s:
        raise ValueError("parse_us_date: empty string")
    dt = date_parser.parse(s, dayfirst=False, yearfirst=False)
    return dt.date()


def format_us_date(value: Union[date, datetime, str, None]) -> str:
    """MM/DD/YYYY, the format every supported portal's date inputs accept."""
    if value is None or value == "":
        return ""
    if isinstance(value, str):
        value = parse_us_date(value)
    return value.strftime("%m/%d/%Y")

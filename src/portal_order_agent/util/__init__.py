from .dates import format_us_date, parse_us_date

__all__ = ["parse_us_date", "format_us_date"]

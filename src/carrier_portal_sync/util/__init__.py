from .dates import parse_portal_date
from .names import normalize_name, split_first_last, split_last_comma_first

__all__ = ["parse_portal_date", "normalize_name", "split_first_last", "split_last_comma_first"]

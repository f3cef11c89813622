from .periodic_task import PeriodicTask
from .record_parsing import clean_envelope, initials, normalize_history_record, parse_timestamp

__all__ = ["PeriodicTask", "clean_envelope", "initials", "normalize_history_record", "parse_timestamp"]

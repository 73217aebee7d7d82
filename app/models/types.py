from datetime import datetime, timedelta, timezone

from sqlalchemy import BigInteger, TypeDecorator

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


class EpochMillis(TypeDecorator):
    """UTC timestamp stored as integer epoch milliseconds.

    Binds aware datetimes (naive values are taken as UTC) and always returns
    aware UTC datetimes, on every backend.
    """

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, int):
            return value
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return (value - _EPOCH) // _ONE_MS

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return _EPOCH + timedelta(milliseconds=int(value))

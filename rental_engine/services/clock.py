from datetime import date, datetime, timezone


def utcnow() -> datetime:
    # Stored naive; every timestamp in the engine is UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_today() -> date:
    return utcnow().date()

"""Naive-UTC time helper (all DateTime columns store UTC without tzinfo)"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

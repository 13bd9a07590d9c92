"""Epoch-second clock shared by locks, tokens and the retry queue."""

import time


def now_ts() -> int:
    return int(time.time())

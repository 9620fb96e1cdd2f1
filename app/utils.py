# app/utils.py
"""Shared utilities: logging, clock and the bounded retry helper used by the
settlement engine."""
import os
import random
import logging
import time
from datetime import datetime, timezone
from functools import wraps
from dotenv import load_dotenv

load_dotenv()

def get_logger(name=__name__):
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        level=getattr(logging, level, logging.INFO)
    )
    return logging.getLogger(name)

logger = get_logger("comics-marketplace")


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    # SQLite hands back naive datetimes; everything we store is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def retry(exceptions, tries=3, delay=0.01, backoff=2, jitter=0.5, logger=logger):
    """Re-run the wrapped call when it raises one of `exceptions`.

    Sleeps `delay` seconds (plus up to `jitter` of that again, randomised)
    between attempts and multiplies the delay by `backoff` each time. The
    final attempt is made outside the try so its exception reaches the caller.
    """
    def deco_retry(f):
        @wraps(f)
        def f_retry(*args, **kwargs):
            mtries, mdelay = tries, delay
            while mtries > 1:
                try:
                    return f(*args, **kwargs)
                except exceptions as e:
                    pause = mdelay + random.uniform(0, mdelay * jitter)
                    logger.warning("Retryable error: %s, retrying in %.3f sec", e, pause)
                    time.sleep(pause)
                    mtries -= 1
                    mdelay *= backoff
            return f(*args, **kwargs)
        return f_retry
    return deco_retry

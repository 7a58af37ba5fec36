"""Utility modules for fleetwatch."""
from utils.logger import setup_logging
from utils.cache import TTLCache
from utils.numbers import parse_number
from utils.keyed_lock import KeyedLock
from utils.retry_queue import DelayedQueue

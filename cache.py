"""
Calculation cache with TTL management and portfolio hashing.
"""

import os
import hashlib
import logging
import tempfile
from pathlib import Path
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Sequence
from threading import Lock
from pydantic import ValidationError as PydanticValidationError
from constants import Defaults
from exceptions import CacheReadError, CacheWriteError
from models import CacheEntry

logger = logging.getLogger(__name__)


def generate_portfolio_hash(tickers: Sequence[str], weights: Sequence[float]) -> str:
    """
    Deterministic, order-independent fingerprint of a portfolio composition.

    Each holding is rendered as ``TICKER:weight`` with six decimals, the strings
    are sorted and joined with ``|``, and a 31-multiplier rolling hash wrapped
    to a signed 32-bit integer is taken over the result. The absolute value is
    returned as 16 zero-padded hex digits.

    Args:
        tickers: Ticker symbols.
        weights: Weights, same length as ``tickers``.

    Returns:
        16-character lower-case hexadecimal string.

    Raises:
        ValueError: If the lengths differ.
    """
    if len(tickers) != len(weights):
        raise ValueError("Tickers and weights must have same length")

    joined = "|".join(
        sorted(f"{ticker}:{weight:.6f}" for ticker, weight in zip(tickers, weights))
    )

    hash_value = 0
    for char in joined:
        hash_value = (hash_value * 31 + ord(char)) & 0xFFFFFFFF
    if hash_value >= 0x80000000:
        hash_value -= 0x100000000

    return format(abs(hash_value), "x").zfill(16)


class CalculationCache:
    """File-backed store of calculation results keyed by portfolio, date range and benchmark."""

    def __init__(self, cache_dir: str = Defaults.CACHE_DIR, ttl_hours: int = Defaults.CACHE_TTL_HOURS) -> None:
        """
        Initializes the CalculationCache with a cache directory and a time-to-live (TTL).

        Args:
            cache_dir (str): The directory to store the cache files in.
            ttl_hours (int): Hours a freshly written entry stays valid.
        """
        # Resolve and validate cache directory path
        self.cache_dir = Path(cache_dir).resolve()

        cwd = Path.cwd().resolve()
        home_dir = Path.home().resolve()
        temp_dir = Path(tempfile.gettempdir()).resolve()

        if not any(
            self._is_safe_subpath(self.cache_dir, parent)
            for parent in (cwd, home_dir, temp_dir)
        ):
            raise ValueError(
                f"Cache directory must be within current working directory, "
                f"home directory, or temp directory. Got: {cache_dir}"
            )

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.ttl = timedelta(hours=ttl_hours)
        self._lock = Lock()
        logger.debug(f"Calculation cache initialized: {self.cache_dir} (TTL: {ttl_hours}h)")

    def _is_safe_subpath(self, path: Path, parent: Path) -> bool:
        """Check if path is safely within parent directory."""
        try:
            path.relative_to(parent)
            return True
        except ValueError:
            return False

    def _get_cache_key(
        self, portfolio_hash: str, start_date: date, end_date: date, benchmark_ticker: str
    ) -> str:
        """
        MD5 of the four-part key, so the file name can never contain path separators.

        Returns:
            32-character hexadecimal hash that is safe to use as filename
        """
        key_str = f"{portfolio_hash}|{start_date.isoformat()}|{end_date.isoformat()}|{benchmark_ticker}"
        return hashlib.md5(key_str.encode()).hexdigest()

    def _get_cache_path(self, cache_key: str) -> Path:
        """
        Get cache file path with path traversal protection.

        Raises:
            ValueError: If the key is not a 32-character hex digest or the path escapes the cache dir
        """
        if len(cache_key) != 32 or not all(c in "0123456789abcdef" for c in cache_key):
            raise ValueError(f"Invalid cache key: {cache_key[:10]}...")

        cache_path = (self.cache_dir / f"{cache_key}.json").resolve()

        try:
            cache_path.relative_to(self.cache_dir)
        except ValueError:
            raise ValueError(
                f"Security violation: Cache path outside cache directory. "
                f"Path: {cache_path}, Cache dir: {self.cache_dir}"
            )

        return cache_path

    def expiry_for(self, calculated_at: datetime) -> datetime:
        """Expiry timestamp for an entry calculated at ``calculated_at``."""
        return calculated_at + self.ttl

    def _read(self, cache_path: Path, cache_key: str) -> Optional[CacheEntry]:
        if not cache_path.exists():
            return None
        try:
            return CacheEntry.model_validate_json(cache_path.read_text(encoding="utf-8"))
        except (OSError, ValueError, PydanticValidationError) as e:
            raise CacheReadError(f"Unreadable cache entry: {e}", cache_key=cache_key) from e

    def get(
        self,
        portfolio_hash: str,
        start_date: date,
        end_date: date,
        benchmark_ticker: str,
        now: Optional[datetime] = None,
    ) -> Optional[CacheEntry]:
        """
        Retrieves a valid, unexpired entry for the key.

        Thread-safe: Uses a lock to prevent reading a file while it is replaced.

        Args:
            portfolio_hash: Hash from ``generate_portfolio_hash``.
            start_date: First day of the requested range.
            end_date: Last day of the requested range.
            benchmark_ticker: Benchmark symbol.
            now: Reference time for expiry, defaults to the current UTC time.

        Returns:
            The cache entry, or None if it is missing, invalidated or expired.

        Raises:
            CacheReadError: If a file exists for the key but cannot be parsed.
        """
        now = now or datetime.now(timezone.utc)
        cache_key = self._get_cache_key(portfolio_hash, start_date, end_date, benchmark_ticker)

        with self._lock:
            entry = self._read(self._get_cache_path(cache_key), cache_key)

        if entry is None:
            return None

        if not entry.is_fresh(now):
            logger.debug(
                f"Cache stale for {portfolio_hash} ({start_date} to {end_date}, {benchmark_ticker})"
            )
            return None

        age_hours = (now - entry.calculated_at).total_seconds() / 3600
        logger.debug(f"Cache hit: {portfolio_hash}, age: {age_hours:.1f}h")
        return entry

    def upsert(self, entry: CacheEntry) -> None:
        """
        Writes an entry, replacing any previous entry for the same key.

        The document is written to a temporary file in the cache directory and
        moved into place, so readers never observe a partial file.

        Args:
            entry: The entry to store.

        Raises:
            CacheWriteError: If the entry cannot be written.
        """
        cache_key = self._get_cache_key(
            entry.portfolio_hash, entry.start_date, entry.end_date, entry.benchmark_ticker
        )

        with self._lock:
            tmp_path = None
            try:
                cache_path = self._get_cache_path(cache_key)
                fd, tmp_path = tempfile.mkstemp(dir=self.cache_dir, suffix=".tmp")
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(entry.model_dump_json(by_alias=True))
                os.replace(tmp_path, cache_path)
                tmp_path = None
                logger.debug(f"Cached calculation {entry.portfolio_hash} as {cache_path.name}")
            except (OSError, ValueError, TypeError) as e:
                raise CacheWriteError(f"Cache write failed: {e}", cache_key=cache_key) from e
            finally:
                if tmp_path is not None:
                    try:
                        os.unlink(tmp_path)
                    except OSError:
                        pass

    def invalidate(
        self, portfolio_hash: str, start_date: date, end_date: date, benchmark_ticker: str
    ) -> bool:
        """
        Marks the entry for a key as invalid without deleting it.

        Returns:
            True if an entry existed and was invalidated.

        Raises:
            CacheReadError: If the existing entry cannot be parsed.
            CacheWriteError: If the updated entry cannot be written.
        """
        cache_key = self._get_cache_key(portfolio_hash, start_date, end_date, benchmark_ticker)
        with self._lock:
            entry = self._read(self._get_cache_path(cache_key), cache_key)
        if entry is None or not entry.is_valid:
            return False

        self.upsert(entry.model_copy(update={"is_valid": False}))
        logger.info(f"Invalidated cached calculation {portfolio_hash}")
        return True

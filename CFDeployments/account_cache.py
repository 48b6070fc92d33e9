"""
Account Access Key Cache

Disk cache that maps AWS access key IDs to the account (and partition)
they belong to, so STS does not need to be asked on every run.
"""
import errno
import json
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional

from .config import DEFAULT_ACCOUNT_CACHE_MAX_ENTRIES

logger = logging.getLogger(__name__)


class AccountAccessKeyCache:
    """
    Usage:
        account = await cache.fetch(access_key_id, resolver)
    """

    # Max number of entries in the cache, after which the cache is reset
    MAX_ENTRIES = DEFAULT_ACCOUNT_CACHE_MAX_ENTRIES

    def __init__(self, file_path: str, max_entries: Optional[int] = None):
        self.cache_file = Path(file_path)
        self.max_entries = max_entries or self.MAX_ENTRIES

    async def fetch(self, access_key_id: str, resolver: Callable[[], Awaitable[Optional[Dict]]]) -> Optional[Dict]:
        """
        Return the cached account for an access key, resolving and storing it on a miss.

        Args:
            access_key_id: AWS access key ID
            resolver: Coroutine function returning {'accountId': ..., 'partition': ...}

        Returns:
            Account dictionary or None if the resolver found nothing
        """
        cached = self.get(access_key_id)
        if cached:
            logger.debug("Retrieved account ID %s from disk cache", cached.get('accountId'))
            return cached

        account = await resolver()
        if account:
            self.put(access_key_id, account)
        return account

    def get(self, access_key_id: str) -> Optional[Dict]:
        return self._load_map().get(access_key_id)

    def put(self, access_key_id: str, account: Dict):
        cache = self._load_map()

        # nuke cache if it's too big
        if len(cache) >= self.max_entries:
            cache = {}

        cache[access_key_id] = account
        self._save_map(cache)

    def _load_map(self) -> Dict[str, Dict]:
        try:
            with open(self.cache_file, 'r') as f:
                data = json.load(f)
        except (FileNotFoundError, PermissionError):
            return {}
        except json.JSONDecodeError:
            # Corrupted, probably by concurrent writers. An empty cache is fine.
            return {}
        return data if isinstance(data, dict) else {}

    def _save_map(self, cache: Dict[str, Dict]):
        try:
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.cache_file, 'w') as f:
                json.dump(cache, f, indent=2)
        except OSError as e:
            # Read-only or missing directory: skip writing the cache
            if isinstance(e, (FileNotFoundError, PermissionError)) or e.errno == errno.EROFS:
                logger.debug("Could not write account cache %s: %s", self.cache_file, e)
                return
            raise


def default_account_cache(settings) -> AccountAccessKeyCache:
    path = settings.account_cache_path or os.path.join(str(Path.home()), '.cdk', 'cache', 'accounts_partitions.json')
    return AccountAccessKeyCache(path, settings.account_cache_max_entries)

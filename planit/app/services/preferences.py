"""
Persisted UI preferences.

Stores small JSON values (the auto-refresh toggle) in Redis so every tab of
the same user sees the same setting. Storage problems never break the board:
reads fall back to the default and writes are dropped with a warning.
"""

import json
import logging
from typing import Optional

from planit.app.core.redis_client import get_redis

logger = logging.getLogger("planit.preferences")


class PreferenceStore:
    
    def __init__(self, redis_client=None, namespace: str = "planit:prefs"):
        self._redis = redis_client
        self.namespace = namespace

    def _key(self, name: str) -> str:
        return f"{self.namespace}:{name}"

    async def _client(self):
        return self._redis if self._redis is not None else await get_redis()

    async def get_bool(self, name: str, default: bool = True) -> bool:
        """Read a boolean; anything missing or malformed yields the default."""
        try:
            client = await self._client()
            raw: Optional[str] = await client.get(self._key(name))
        except Exception as exc:
            logger.warning("Preference read failed", extra={"preference": name, "error": str(exc)})
            return default
        
        if raw is None:
            return default
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError):
            return default
        return parsed if isinstance(parsed, bool) else default

    async def set_bool(self, name: str, value: bool) -> bool:
        """Persist a boolean. Returns False when storage was unavailable."""
        try:
            client = await self._client()
            await client.set(self._key(name), json.dumps(bool(value)))
        except Exception as exc:
            logger.warning("Preference write failed", extra={"preference": name, "error": str(exc)})
            return False
        return True

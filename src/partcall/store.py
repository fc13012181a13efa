"""Externalised call state, keyed by call ID.

Every write is a compare-and-set on the stored version: ``put`` succeeds only
when the version currently stored equals ``expected_version`` (0 when there
is no record yet) and then stores ``expected_version + 1``. Two webhook
deliveries racing on the same base state cannot both win.
"""

import json
import logging
import time
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from partcall.session import CallState

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600
KEY_PREFIX = "partcall"

# KEYS[1] = state key, KEYS[2] = per-quote index key
# ARGV[1] = expected version, ARGV[2] = JSON, ARGV[3] = ttl, ARGV[4] = call id ("" = no index)
CAS_SCRIPT = """
local current = redis.call('GET', KEYS[1])
local version = 0
if current then
  local ok, decoded = pcall(cjson.decode, current)
  if ok and decoded['version'] then
    version = tonumber(decoded['version'])
  end
end
if version ~= tonumber(ARGV[1]) then
  return 0
end
redis.call('SET', KEYS[1], ARGV[2], 'EX', tonumber(ARGV[3]))
if ARGV[4] ~= '' then
  redis.call('SADD', KEYS[2], ARGV[4])
  redis.call('EXPIRE', KEYS[2], tonumber(ARGV[3]))
end
return 1
"""


class StateStoreError(Exception):
    """The store is unreachable or holds a record that cannot be read."""


def call_key(call_id: str) -> str:
    return f"{KEY_PREFIX}:call:{call_id}"


def quote_index_key(quote_request_id: str) -> str:
    return f"{KEY_PREFIX}:quote-calls:{quote_request_id}"


def _serialize(state: CallState, version: int) -> str:
    data = state.to_dict()
    data["version"] = version
    return json.dumps(data)


def _deserialize(raw: str, call_id: str) -> CallState:
    try:
        return CallState.from_dict(json.loads(raw))
    except (KeyError, TypeError, ValueError) as e:
        raise StateStoreError(f"corrupt state for call {call_id}: {e}") from e


class InMemoryStateStore:
    """Process-local store with TTL expiry. For tests and local development."""

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._records: dict[str, tuple[float, str]] = {}
        self._index: dict[str, set[str]] = {}

    def _live(self, call_id: str) -> Optional[str]:
        record = self._records.get(call_id)
        if record is None:
            return None
        expires_at, raw = record
        if self._clock() >= expires_at:
            logger.info("State for call %s expired", call_id)
            del self._records[call_id]
            return None
        return raw

    async def get(self, call_id: str) -> Optional[CallState]:
        raw = self._live(call_id)
        return _deserialize(raw, call_id) if raw is not None else None

    async def put(self, call_id: str, state: CallState, expected_version: int) -> bool:
        raw = self._live(call_id)
        current = json.loads(raw).get("version", 0) if raw is not None else 0
        if current != expected_version:
            logger.warning(
                "CAS conflict for call %s: expected v%d, stored v%d",
                call_id, expected_version, current,
            )
            return False
        new_version = expected_version + 1
        self._records[call_id] = (self._clock() + self.ttl_seconds, _serialize(state, new_version))
        if state.quote_request_id:
            self._index.setdefault(state.quote_request_id, set()).add(call_id)
        state.version = new_version
        return True

    async def delete(self, call_id: str) -> None:
        record = self._records.pop(call_id, None)
        if record is None:
            return
        quote_request_id = json.loads(record[1]).get("quoteRequestId", "")
        self._index.get(quote_request_id, set()).discard(call_id)

    async def active_calls(self, quote_request_id: str) -> list[str]:
        active = []
        for call_id in sorted(self._index.get(quote_request_id, set())):
            state = await self.get(call_id)
            if state is not None and not state.is_terminal:
                active.append(call_id)
        return active


class RedisStateStore:
    """Redis-backed store. The CAS runs server-side as a Lua script."""

    def __init__(
        self,
        redis_url: str = "",
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        client: Optional[redis.Redis] = None,
    ):
        self.ttl_seconds = ttl_seconds
        if client is not None:
            self._client = client
        else:
            self._client = redis.from_url(
                redis_url,
                encoding="utf-8",
                decode_responses=True,
            )

    async def close(self) -> None:
        await self._client.aclose()

    async def get(self, call_id: str) -> Optional[CallState]:
        try:
            raw = await self._client.get(call_key(call_id))
        except RedisError as e:
            logger.error("State store get failed for call %s: %s", call_id, e)
            raise StateStoreError(str(e)) from e
        if raw is None:
            return None
        return _deserialize(raw, call_id)

    async def put(self, call_id: str, state: CallState, expected_version: int) -> bool:
        new_version = expected_version + 1
        try:
            ok = await self._client.eval(
                CAS_SCRIPT,
                2,
                call_key(call_id),
                quote_index_key(state.quote_request_id),
                expected_version,
                _serialize(state, new_version),
                self.ttl_seconds,
                call_id if state.quote_request_id else "",
            )
        except RedisError as e:
            logger.error("State store put failed for call %s: %s", call_id, e)
            raise StateStoreError(str(e)) from e
        if int(ok) != 1:
            logger.warning("CAS conflict for call %s at expected v%d", call_id, expected_version)
            return False
        state.version = new_version
        return True

    async def delete(self, call_id: str) -> None:
        try:
            raw = await self._client.get(call_key(call_id))
            await self._client.delete(call_key(call_id))
            if raw:
                quote_request_id = json.loads(raw).get("quoteRequestId", "")
                if quote_request_id:
                    await self._client.srem(quote_index_key(quote_request_id), call_id)
        except RedisError as e:
            logger.error("State store delete failed for call %s: %s", call_id, e)
            raise StateStoreError(str(e)) from e

    async def active_calls(self, quote_request_id: str) -> list[str]:
        index = quote_index_key(quote_request_id)
        try:
            members = await self._client.smembers(index)
        except RedisError as e:
            raise StateStoreError(str(e)) from e
        active = []
        for call_id in sorted(members):
            state = await self.get(call_id)
            if state is None:
                # expired; prune the index
                await self._client.srem(index, call_id)
            elif not state.is_terminal:
                active.append(call_id)
        return active

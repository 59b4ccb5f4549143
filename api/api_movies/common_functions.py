import json
import logging
from datetime import datetime, timezone
from typing import Any

from bson import ObjectId
from bson.errors import InvalidId
import redis

logger = logging.getLogger(__name__)


def utc_now():
    """
    Return the current UTC time as a naive datetime, the form PyMongo hands back.

    Returns:
        datetime: Current UTC time without tzinfo.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def serialize_value(value: Any):
    """
    Convert MongoDB values into JSON-friendly equivalents.

    Args:
        value (Any): Value read from a document.

    Returns:
        Any: Value with ObjectIds as strings and datetimes as ISO 8601 text.
    """
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.replace(microsecond=0).isoformat() + "Z"
    if isinstance(value, dict):
        return {key: serialize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(item) for item in value]
    return value


def serialize_document(document: dict | None):
    """
    Serialize a MongoDB document to a JSON-friendly dictionary.

    Args:
        document (dict | None): MongoDB document.

    Returns:
        dict: Safe copy with string identifiers and no password field.
    """
    if not document:
        return {}
    payload = serialize_value(dict(document))
    payload.pop("password", None)
    return payload


def identifier_candidates(identifier: Any):
    """
    List the stored forms an identifier may take.

    Documents created by the API carry ObjectIds, imported ones may carry plain strings.

    Args:
        identifier (Any): Identifier supplied by the client.

    Returns:
        list: String form first, ObjectId form when the text parses as one.
    """
    if isinstance(identifier, ObjectId):
        return [identifier, str(identifier)]
    if identifier is None:
        return []
    text = str(identifier).strip()
    if not text:
        return []
    candidates = [text]
    try:
        candidates.append(ObjectId(text))
    except (InvalidId, TypeError):
        pass
    return candidates


def expand_identifiers(identifiers: list | None):
    """
    Flatten the candidates of several identifiers into one list.

    Args:
        identifiers (list | None): Raw identifiers.

    Returns:
        list: Every stored form of every identifier.
    """
    expanded = []
    for identifier in identifiers or []:
        expanded.extend(identifier_candidates(identifier))
    return expanded


def build_identifier_query(identifier: Any):
    """
    Build a filter matching a document by any stored form of its ``_id``.

    Args:
        identifier (Any): Identifier supplied by the client.

    Returns:
        dict: MongoDB filter.
    """
    return {"_id": {"$in": identifier_candidates(identifier)}}


def normalize_id_list(values: Any):
    """
    Normalize a stored id list into unique strings, keeping first-seen order.

    Args:
        values (Any): Raw list from a user document, possibly missing.

    Returns:
        list[str]: Identifiers as strings.
    """
    if not isinstance(values, list):
        return []
    normalized = []
    seen = set()
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if not text or text in seen:
            continue
        seen.add(text)
        normalized.append(text)
    return normalized


def safe_int(value, default=0):
    """
    Parse a value into an integer, tolerating strings and floats.

    Args:
        value (Any): Raw value to convert.
        default (int): Fallback value when parsing fails.

    Returns:
        int: Parsed integer or the default.
    """
    if value is None:
        return default
    try:
        return int(float(str(value).split()[0]))
    except (TypeError, ValueError, IndexError):
        return default


def clamp(value: int | float, minimum: int | float, maximum: int | float):
    """
    Return minimum when value is below minimum. Return maximum when value is above maximum. Otherwise return value.

    Args:
        value (int | float): Number to check.
        minimum (int | float): Lower bound.
        maximum (int | float): Upper bound.

    Returns:
        int | float: Result after the bounds check.
    """
    return max(minimum, min(maximum, value))


def build_cache_key(prefix: str, *parts: Any):
    """
    Build a Redis cache key with a prefix and optional segments.

    Args:
        prefix (str): Root part of the key.
        *parts: Additional segments.

    Returns:
        str: Colon-separated cache key.
    """
    normalized = [prefix]
    for part in parts:
        normalized.append(str(part) if part is not None else "")
    return ":".join(normalized)


def read_cached_json(redis_client: redis.Redis, cache_key: str):
    """
    Read a cached JSON payload.

    Args:
        redis_client (Redis): Redis client instance.
        cache_key (str): Key to read.

    Returns:
        Any | None: Decoded payload or None on a miss or a cache failure.
    """
    try:
        cached = redis_client.get(cache_key)
    except redis.RedisError as exc:
        logger.warning("Redis read for %s failed: %s", cache_key, exc)
        return None
    if not cached:
        logger.debug("cache miss %s", cache_key)
        return None
    try:
        payload = json.loads(cached)
    except json.JSONDecodeError:
        return None
    logger.debug("cache hit %s", cache_key)
    return payload


def write_cached_json(redis_client: redis.Redis, cache_key: str, ttl_seconds: int, payload: Any):
    """
    Store a JSON payload with a time-to-live.

    Args:
        redis_client (Redis): Redis client instance.
        cache_key (str): Key to write.
        ttl_seconds (int): Expiry in seconds.
        payload (Any): JSON-serializable value.
    """
    try:
        redis_client.setex(cache_key, ttl_seconds, json.dumps(payload))
    except redis.RedisError as exc:
        logger.warning("Redis write for %s failed: %s", cache_key, exc)


def invalidate_cache_prefix(redis_client: redis.Redis, prefix: str):
    """
    Delete every cached entry under a prefix.

    Args:
        redis_client (Redis): Redis client instance.
        prefix (str): Key prefix to purge.
    """
    try:
        for key in redis_client.scan_iter(f"{prefix}*"):
            redis_client.delete(key)
    except redis.RedisError as exc:
        logger.warning("Redis invalidation for %s failed: %s", prefix, exc)

"""
API key hashing and IP pattern matching.

API keys are stored as argon2id hashes. Lookup narrows candidates by the
key's prefix and last four characters so only a handful of hashes are
verified per request.

IP patterns accept an exact address, '*' wildcard segments ("192.168.1.*"),
or CIDR notation ("10.0.0.0/8").
"""
import ipaddress
import re
import secrets
from typing import Iterable, Optional

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from app.utils import get_logger


log = get_logger(__name__)

_hasher = PasswordHasher(time_cost=3, memory_cost=64 * 1024, parallelism=4)

_WILDCARD_SEGMENT = re.compile(r"^(\*|25[0-5]|2[0-4]\d|1?\d?\d)$")


def generate_api_key(prefix: str = "sk") -> str:
    """Generate a new plaintext API key such as 'sk_<43 url-safe chars>'."""
    return f"{prefix}_{secrets.token_urlsafe(32)}"


def key_prefix(api_key: str) -> str:
    """Return the part of the key up to and including the first underscore."""
    return api_key[: api_key.index("_") + 1] if "_" in api_key else ""


def hash_api_key(api_key: str) -> str:
    return _hasher.hash(api_key)


def verify_api_key(api_key: str, key_hash: str) -> bool:
    """Return True if api_key matches key_hash. Malformed hashes never match."""
    try:
        return _hasher.verify(key_hash, api_key)
    except VerifyMismatchError:
        return False
    except (InvalidHashError, VerificationError) as e:
        log.warning("API key hash could not be verified: %s", e)
        return False


def needs_rehash(key_hash: str) -> bool:
    """True when key_hash was produced with different argon2 parameters."""
    return _hasher.check_needs_rehash(key_hash)


def validate_ip_pattern(pattern: str) -> str:
    """
    Check that pattern is an address, a wildcard pattern or a CIDR network.

    Raises:
        ValueError: If the pattern is none of those
    """
    pattern = pattern.strip()
    if "*" in pattern:
        segments = pattern.split(".")
        if len(segments) != 4 or not all(_WILDCARD_SEGMENT.match(s) for s in segments):
            raise ValueError(f"Invalid wildcard IP pattern: {pattern}")
        return pattern
    if "/" in pattern:
        ipaddress.ip_network(pattern, strict=False)
        return pattern
    ipaddress.ip_address(pattern)
    return pattern


def ip_matches(ip: Optional[str], pattern: str) -> bool:
    """Return True if ip matches a single pattern."""
    if not ip:
        return False
    if "*" in pattern:
        ip_segments = ip.split(".")
        pattern_segments = pattern.split(".")
        if len(ip_segments) != len(pattern_segments):
            return False
        return all(p == "*" or p == s for p, s in zip(pattern_segments, ip_segments))
    try:
        address = ipaddress.ip_address(ip)
        if "/" in pattern:
            return address in ipaddress.ip_network(pattern, strict=False)
        return address == ipaddress.ip_address(pattern)
    except ValueError:
        return False


def ip_in_any(ip: Optional[str], patterns: Iterable[str]) -> bool:
    return any(ip_matches(ip, pattern) for pattern in patterns)

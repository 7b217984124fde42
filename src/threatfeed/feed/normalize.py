# Feed Module - Target & Indicator Normalization
#
# Canonical forms used for identity hashing and matching:
#   url      - case-folded, no scheme, no "www.", no default port, no
#              query string or fragment, no trailing slash
#   domain   - case-folded, no trailing dot, no "www."
#   wallet / contract / token - EVM hex lower-cased with 0x prefix,
#              base58 kept case-sensitive (whitespace stripped)
#   ip       - compressed canonical form when parseable
#   other    - stripped and case-folded

import hashlib
import ipaddress
import json
import re
from typing import Iterable, List, Union
from urllib.parse import urlsplit

from .models import IndicatorType, Indicator, TargetType

_EVM_ADDRESS = re.compile(r"^(0x)?([0-9a-fA-F]{40})$")
_HEX_DIGEST = re.compile(r"^(0x)?([0-9a-fA-F]+)$")
_DEFAULT_PORTS = {"80", "443"}

AnyType = Union[TargetType, IndicatorType]


def normalize_url(value: str) -> str:
    raw = value.strip()
    if "://" not in raw:
        raw = "//" + raw
    parts = urlsplit(raw)
    host = (parts.hostname or "").rstrip(".").lower()
    if host.startswith("www."):
        host = host[4:]
    try:
        port = parts.port
    except ValueError:
        port = None
    netloc = host
    if port is not None and str(port) not in _DEFAULT_PORTS:
        netloc = f"{host}:{port}"
    path = parts.path.rstrip("/").lower()
    return f"{netloc}{path}"


def normalize_domain(value: str) -> str:
    host = value.strip().lower().rstrip(".")
    if "://" in host or "/" in host:
        host = normalize_url(host).split("/", 1)[0]
    if host.startswith("www."):
        host = host[4:]
    return host


def normalize_address(value: str) -> str:
    """EVM hex addresses are case-insensitive; base58 addresses are not."""
    raw = value.strip()
    m = _EVM_ADDRESS.match(raw)
    if m:
        return "0x" + m.group(2).lower()
    return raw


def normalize_ip(value: str) -> str:
    raw = value.strip()
    try:
        return str(ipaddress.ip_address(raw))
    except ValueError:
        return raw.lower()


def normalize_value(kind: AnyType, value: str) -> str:
    """Normalize a target or indicator value according to its type."""
    name = kind.value
    if name == "url":
        return normalize_url(value)
    if name == "domain":
        return normalize_domain(value)
    if name in ("wallet", "contract", "token"):
        return normalize_address(value)
    if name == "ip":
        return normalize_ip(value)
    if name == "hash":
        raw = value.strip()
        return raw.lower() if _HEX_DIGEST.match(raw) else raw
    if name == "signature":
        return value.strip()
    return value.strip().casefold()


def normalize_indicators(indicators: Iterable[Indicator]) -> List[Indicator]:
    """Normalize values and drop duplicates, keeping first-seen order."""
    seen = set()
    out: List[Indicator] = []
    for ind in indicators:
        value = normalize_value(ind.type, ind.value)
        key = (ind.type, value)
        if key in seen:
            continue
        seen.add(key)
        out.append(Indicator(type=ind.type, value=value, context=ind.context))
    return out


def identity_hash(
    target_type: TargetType, target_value: str, indicator_values: Iterable[str]
) -> str:
    """SHA-256 over (target type, normalized target value, sorted indicators).

    Callers pass already-normalized values.
    """
    payload = json.dumps(
        [target_type.value, target_value, sorted(set(indicator_values))],
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()

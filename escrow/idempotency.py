import hashlib
import json


def _canonical_json(payload) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def request_hash(scope: str, payload: dict) -> str:
    """Fingerprint of a request, used to tell a retry from a conflicting call."""
    raw = f"{scope}|{_canonical_json(payload)}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()

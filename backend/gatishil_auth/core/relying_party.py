"""Relying-party helpers shared by passkey registration and sign-in."""

from typing import Any


def derive_rp_id(host: str | None, canonical_domain: str) -> str:
    """Relying-party id for a request host.

    Strips the port and collapses any subdomain of *canonical_domain* (notably
    ``www.``) to the apex, so credentials registered on either are usable on
    both. Unknown hosts (localhost, preview deployments) are returned as-is.
    """
    apex = canonical_domain.strip().lower().rstrip(".")
    if not host:
        return apex
    hostname = host.strip().lower()
    if hostname.startswith("["):
        # IPv6 literal: keep everything up to the closing bracket
        return hostname.split("]", 1)[0] + "]"
    hostname = hostname.split(":", 1)[0].rstrip(".")
    if hostname == apex or hostname.endswith("." + apex):
        return apex
    return hostname


def extract_registration_credential(payload: Any) -> dict | None:
    """Pull the browser's credential out of ``{credential}``, ``{response}`` or a bare payload."""
    if not isinstance(payload, dict):
        return None
    candidate = payload.get("credential") or payload
    if isinstance(candidate, dict) and "rawId" not in candidate and isinstance(payload.get("response"), dict):
        nested = payload["response"]
        if "rawId" in nested:
            candidate = nested
    if not isinstance(candidate, dict):
        return None
    for key in ("id", "rawId", "type"):
        if not isinstance(candidate.get(key), str):
            return None
    if not isinstance(candidate.get("response"), dict):
        return None
    return candidate

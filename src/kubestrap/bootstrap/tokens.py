"""Join token requests and parsing."""

import re
from datetime import datetime, timedelta

from pydantic import SecretStr

from kubestrap.core.models import JoinToken

JOIN_COMMAND_RE = re.compile(
    r"kubeadm join (?P<endpoint>\S+)\s+--token (?P<token>[a-z0-9]{6}\.[a-z0-9]{16})"
    r"\s+--discovery-token-ca-cert-hash (?P<hash>sha256:[a-f0-9]{64})"
)


def token_create_command(ttl_seconds: int) -> str:
    """Command printing a join command for a fresh token valid ``ttl_seconds``."""
    return f"kubeadm token create --ttl {ttl_seconds}s --print-join-command"


def parse_join_command(output: str, ttl_seconds: int, issued_at: datetime) -> JoinToken:
    """Build a JoinToken from ``kubeadm token create --print-join-command`` output.

    ``issued_at`` should be taken before the token was requested, so the
    computed expiry is never later than the real one.

    Raises:
        ValueError: If no join command is found in ``output``
    """
    match = JOIN_COMMAND_RE.search(" ".join(output.replace("\\\n", " ").split()))
    if match is None:
        raise ValueError("No kubeadm join command in token output")
    return JoinToken(
        token=SecretStr(match.group("token")),
        discovery_hash=match.group("hash"),
        endpoint=match.group("endpoint"),
        expires_at=issued_at + timedelta(seconds=ttl_seconds),
    )

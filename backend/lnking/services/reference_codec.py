"""Transaction reference (tx_ref) encoding and decoding

Wire format: ``<namespace>_<userId>_<workspaceId>_<planName>_<interval>[_<nonce>...]``.
The checkout surface mints references with ``encode``; the provider echoes
them back in charge notifications, where ``decode`` recovers the target
workspace and plan.
"""
import secrets
from dataclasses import dataclass
from typing import Optional

from lnking.core.config import settings
from lnking.core.exceptions import MalformedReference

DELIMITER = "_"
VALID_INTERVALS = ("monthly", "yearly")
NONCE_BYTES = 4  # 8 hex chars


@dataclass(frozen=True)
class TransactionReference:
    user_id: str
    workspace_id: str
    plan_name: str
    interval: str


def _namespace(namespace: Optional[str]) -> str:
    return namespace if namespace is not None else settings.TX_REF_NAMESPACE


def encode(reference: TransactionReference, nonce: Optional[str] = None,
           namespace: Optional[str] = None) -> str:
    """Serialise a reference, appending a random nonce unless one is given."""
    if nonce is None:
        nonce = secrets.token_hex(NONCE_BYTES)

    segments = [
        _namespace(namespace),
        reference.user_id,
        reference.workspace_id,
        reference.plan_name.lower(),
        reference.interval.lower(),
        nonce,
    ]
    for segment in segments:
        if not segment:
            raise MalformedReference(None, "empty segment")
        if DELIMITER in segment:
            raise MalformedReference(None, f"segment {segment!r} contains {DELIMITER!r}")
    if segments[4] not in VALID_INTERVALS:
        raise MalformedReference(None, f"unsupported interval {reference.interval!r}")

    return DELIMITER.join(segments)


def decode(value: Optional[str], namespace: Optional[str] = None) -> TransactionReference:
    """Parse a tx_ref. Segments after the interval are ignored."""
    if not value:
        raise MalformedReference(value, "missing")

    parts = value.split(DELIMITER)
    if len(parts) < 5:
        raise MalformedReference(value, "expected at least 5 segments")
    if parts[0] != _namespace(namespace):
        raise MalformedReference(value, f"unexpected namespace {parts[0]!r}")

    _, user_id, workspace_id, plan_name, interval = parts[:5]
    if not (user_id and workspace_id and plan_name and interval):
        raise MalformedReference(value, "empty segment")

    interval = interval.lower()
    if interval not in VALID_INTERVALS:
        raise MalformedReference(value, f"unsupported interval {interval!r}")

    return TransactionReference(
        user_id=user_id,
        workspace_id=workspace_id,
        plan_name=plan_name.lower(),
        interval=interval
    )

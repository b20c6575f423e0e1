"""
Decoding Boundary

Everything loosely typed that comes back from the outside world is turned
into sentinel.results shapes here:
- bounty board rows (web3 tuples, AttributeDicts, or JSON-style dicts)
- execution gateway RPC payloads (exec / browser)
- blob publisher responses (newly created / already certified)
- contract event logs (PolicyCreated)

Decoders are lenient about shape and strict about meaning: a row that
cannot be read is dropped, a payload carrying an "error" raises.
"""

import logging
from collections.abc import Mapping
from typing import Any, Optional

from .errors import GatewayError
from .results import (
    BlobUpload,
    BountyTask,
    BrowserSnapshot,
    ExecResponse,
    TaskType,
)

logger = logging.getLogger("sentinel.decoding")


# ============================================================
# SCALARS
# ============================================================

def to_int(value: Any, default: Optional[int] = 0) -> Optional[int]:
    """Coerce an on-chain numeric (int, decimal/hex str, integral float) to int."""
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else default
    if isinstance(value, str):
        text = value.strip().replace("_", "")
        try:
            return int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError:
            return default
    return default


def decode_text(value: Any) -> str:
    """Decode a Move/Solidity string that may arrive as str, bytes or a byte list."""
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, (list, tuple)) and all(isinstance(b, int) and 0 <= b < 256 for b in value):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        for key in ("bytes", "contents"):
            if key in value:
                return decode_text(value[key])
        if "fields" in value:
            return decode_text(value["fields"])
    return ""


def to_hex(value: Any) -> str:
    """Normalize a tx hash (HexBytes, bytes or str) to a 0x-prefixed lowercase string."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if hasattr(value, "hex") and not isinstance(value, str):
        text = value.hex()
        return text if text.startswith("0x") else "0x" + text
    text = str(value or "").strip().lower()
    if text and not text.startswith("0x"):
        text = "0x" + text
    return text


# ============================================================
# BOUNTY BOARD
# ============================================================

_BOUNTY_TUPLE_FIELDS = ("id", "description", "reward_amount", "poster", "completed")


def infer_task_type(description: str) -> TaskType:
    normalized = description.lower()
    if "lint" in normalized:
        return TaskType.LINT
    if "test" in normalized:
        return TaskType.TEST
    if "format" in normalized or "prettier" in normalized:
        return TaskType.FORMAT
    if "audit" in normalized or "security" in normalized:
        return TaskType.AUDIT
    return TaskType.CUSTOM


def _bounty_fields(raw: Any) -> Optional[Mapping]:
    if isinstance(raw, Mapping):
        nested = raw.get("fields")
        return nested if isinstance(nested, Mapping) else raw
    if isinstance(raw, (list, tuple)) and len(raw) >= len(_BOUNTY_TUPLE_FIELDS):
        return dict(zip(_BOUNTY_TUPLE_FIELDS, raw))
    return None


def decode_bounty(raw: Any, fallback_id: int) -> Optional[BountyTask]:
    """One bounty board row → BountyTask, or None if the row is unreadable."""
    fields = _bounty_fields(raw)
    if fields is None:
        return None

    description = decode_text(fields.get("description"))
    reward = fields.get("reward_amount", fields.get("rewardAmount"))
    bounty_id = to_int(fields.get("id", fields.get("bountyId")), default=None)

    return BountyTask(
        bounty_id=bounty_id if bounty_id is not None else fallback_id,
        description=description,
        reward_amount=max(0, to_int(reward, default=0)),
        poster=str(fields.get("poster") or ""),
        completed=bool(fields.get("completed", False)),
        task_type=infer_task_type(description),
    )


def decode_bounty_list(raw: Any) -> list[BountyTask]:
    """Decode the board's bounty collection, dropping unreadable rows."""
    if not raw:
        return []
    if isinstance(raw, Mapping):
        for key in ("bounties", "contents", "fields"):
            if key in raw:
                return decode_bounty_list(raw[key])
        return []
    if not isinstance(raw, (list, tuple)):
        return []

    bounties = []
    for index, row in enumerate(raw):
        task = decode_bounty(row, index)
        if task is None:
            logger.debug(f"Skipping unreadable bounty row #{index}: {row!r}")
            continue
        bounties.append(task)
    return bounties


# ============================================================
# EXECUTION GATEWAY
# ============================================================

def _check_rpc_error(payload: Any, method: str) -> Mapping:
    if not isinstance(payload, Mapping):
        raise GatewayError(f"Gateway {method}: unexpected payload {type(payload).__name__}")
    if payload.get("error"):
        raise GatewayError(f"Gateway {method}: {payload['error']}")
    return payload


def decode_exec_response(payload: Any) -> ExecResponse:
    data = _check_rpc_error(payload, "exec")
    return ExecResponse(
        output=str(data.get("output") or ""),
        exit_code=to_int(data.get("exitCode"), default=0),
        duration_ms=to_int(data.get("duration"), default=0),
    )


def decode_browser_response(payload: Any) -> BrowserSnapshot:
    data = _check_rpc_error(payload, "browser")
    return BrowserSnapshot(
        text=str(data.get("text") or ""),
        output=str(data.get("output") or ""),
        screenshot_url=data.get("screenshotUrl") or None,
    )


# ============================================================
# BLOB PUBLISHER
# ============================================================

def decode_blob_upload(payload: Any, size: int = 0) -> BlobUpload:
    """
    Publisher response → BlobUpload.

    Two shapes are valid:
      {"newlyCreated": {"blobObject": {"blobId": ..., "id": ...}}}
      {"alreadyCertified": {"blobId": ..., "event": {...}}}
    """
    if not isinstance(payload, Mapping):
        raise ValueError(f"Blob publisher returned {type(payload).__name__}, expected object")

    created = payload.get("newlyCreated")
    if isinstance(created, Mapping):
        blob_object = created.get("blobObject") or {}
        blob_id = str(blob_object.get("blobId") or "")
        object_id = str(blob_object.get("id") or "")
    else:
        certified = payload.get("alreadyCertified") or {}
        blob_id = str(certified.get("blobId") or "")
        object_id = ""

    if not blob_id:
        raise ValueError("Blob publisher response carries no blobId")
    return BlobUpload(blob_id=blob_id, object_id=object_id, size=size)


# ============================================================
# CONTRACT EVENTS
# ============================================================

def decode_policy_id(events: Any) -> str:
    """First PolicyCreated event's policyId as a decimal string ('' if absent)."""
    for event in events or ():
        args = event.get("args") if isinstance(event, Mapping) else getattr(event, "args", None)
        if not args:
            continue
        policy_id = to_int(args.get("policyId"), default=None)
        if policy_id is not None:
            return str(policy_id)
    return ""

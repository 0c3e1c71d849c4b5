"""
Normalization of middleware JSON into table rows.
"""

import base64
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


TX_COLUMNS = (
    "hash", "block_hash", "block_height", "micro_index", "micro_time",
    "type", "contract_id", "function", "caller_id", "sender_id", "recipient_id",
    "payload", "signatures", "encoded_tx", "raw", "version",
)

KEY_BLOCK_COLUMNS = (
    "hash", "height", "prev_hash", "prev_key_hash", "state_hash", "beneficiary",
    "miner", "time", "transactions_count", "micro_blocks_count",
    "beneficiary_reward", "flags", "info", "nonce", "pow", "target", "version",
)

MICRO_BLOCK_COLUMNS = (
    "hash", "height", "prev_hash", "prev_key_hash", "state_hash", "time",
    "transactions_count", "flags", "version", "gas", "micro_block_index",
    "pof_hash", "signature", "txs_hash",
)


def sanitize_json(value: Any) -> Any:
    """Strip NUL characters, which PostgreSQL rejects in text and JSONB."""
    if isinstance(value, str):
        return value.replace("\x00", "")
    if isinstance(value, dict):
        return {sanitize_json(k): sanitize_json(v) for k, v in value.items()}
    if isinstance(value, list):
        return [sanitize_json(v) for v in value]
    return value


def decode_payload(payload: Optional[str]) -> str:
    """
    Decode a ``ba_``-prefixed base64check SpendTx payload to text.

    The trailing 4 bytes are the checksum and are dropped.
    """
    if not payload:
        return ""
    if not payload.startswith("ba_"):
        return payload
    encoded = payload[3:]
    try:
        raw = base64.b64decode(encoded + "=" * (-len(encoded) % 4))
    except ValueError:
        logger.warning("Undecodable payload", payload=payload[:32])
        return ""
    return raw[:-4].decode("utf-8", errors="replace")


def _to_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    return int(value)


def _to_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def normalize_tx(tx: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a middleware transaction into a ``txs`` row."""
    body = tx.get("tx") or {}
    tx_type = body.get("type") or ""

    payload = ""
    if tx_type == "SpendTx" and body.get("payload"):
        payload = decode_payload(body["payload"])

    return {
        "hash": tx["hash"],
        "block_hash": tx.get("block_hash") or "",
        "block_height": _to_int(tx.get("block_height")),
        "micro_index": _to_int(tx.get("micro_index")),
        "micro_time": _to_int(tx.get("micro_time")),
        "type": tx_type,
        "contract_id": body.get("contract_id"),
        "function": body.get("function"),
        "caller_id": body.get("caller_id"),
        "sender_id": body.get("sender_id"),
        "recipient_id": body.get("recipient_id"),
        "payload": sanitize_json(payload),
        "signatures": sanitize_json(tx.get("signatures") or []),
        "encoded_tx": tx.get("encoded_tx") or "",
        "raw": sanitize_json(body) if body else None,
        "version": 1,
    }


def normalize_key_block(block: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a middleware key block into a ``key_blocks`` row."""
    pow_ = block.get("pow")
    return {
        "hash": block["hash"],
        "height": _to_int(block.get("height")),
        "prev_hash": block.get("prev_hash"),
        "prev_key_hash": block.get("prev_key_hash"),
        "state_hash": block.get("state_hash"),
        "beneficiary": block.get("beneficiary"),
        "miner": block.get("miner"),
        "time": _to_int(block.get("time")),
        "transactions_count": _to_int(block.get("transactions_count")),
        "micro_blocks_count": _to_int(block.get("micro_blocks_count")),
        "beneficiary_reward": _to_str(block.get("beneficiary_reward")),
        "flags": block.get("flags"),
        "info": block.get("info"),
        "nonce": _to_str(block.get("nonce")) or "0",
        "pow": pow_ if isinstance(pow_, list) else [],
        "target": block.get("target"),
        "version": block.get("version"),
    }


def normalize_micro_block(block: Dict[str, Any], fallback_height: Optional[int] = None) -> Dict[str, Any]:
    """Convert a middleware micro block into a ``micro_blocks`` row."""
    height = block.get("height")
    if height is None:
        height = fallback_height
    return {
        "hash": block["hash"],
        "height": _to_int(height),
        "prev_hash": block.get("prev_hash"),
        "prev_key_hash": block.get("prev_key_hash"),
        "state_hash": block.get("state_hash"),
        "time": _to_int(block.get("time")),
        "transactions_count": _to_int(block.get("transactions_count")),
        "flags": block.get("flags"),
        "version": block.get("version"),
        "gas": block.get("gas"),
        "micro_block_index": block.get("micro_block_index"),
        "pof_hash": block.get("pof_hash"),
        "signature": block.get("signature"),
        "txs_hash": block.get("txs_hash"),
    }


def is_self_spend(tx: Dict[str, Any]) -> bool:
    """SpendTx whose sender and recipient are the same account."""
    body = tx.get("tx") or {}
    return (
        body.get("type") == "SpendTx"
        and body.get("sender_id") is not None
        and body.get("sender_id") == body.get("recipient_id")
    )

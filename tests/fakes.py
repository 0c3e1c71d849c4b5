"""
In-memory stand-ins for the middleware and for plugins.
"""

from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from sqlalchemy import func, select

from mdw_sync.core.database import get_async_session
from mdw_sync.core.exceptions import MiddlewareError
from mdw_sync.indexer.types import SyncDirection
from mdw_sync.models.tx import Tx
from mdw_sync.plugins.base import BasePlugin, Plugin
from mdw_sync.plugins.matching import PluginFilter


CONTRACT_ID = "ct_token"


def make_tx(
    tx_hash: str,
    height: int,
    micro_hash: str,
    micro_index: int = 0,
    tx_type: str = "ContractCallTx",
    contract_id: Optional[str] = CONTRACT_ID,
    function: Optional[str] = "transfer",
    sender_id: Optional[str] = None,
    recipient_id: Optional[str] = None,
) -> Dict[str, Any]:
    """A transaction shaped like the middleware's JSON."""
    body: Dict[str, Any] = {"type": tx_type}
    if tx_type == "ContractCallTx":
        body.update({"contract_id": contract_id, "function": function, "caller_id": "ak_caller"})
    if tx_type == "SpendTx":
        body.update({"sender_id": sender_id or "ak_sender", "recipient_id": recipient_id or "ak_recipient"})

    return {
        "hash": tx_hash,
        "block_hash": micro_hash,
        "block_height": height,
        "micro_index": micro_index,
        "micro_time": height * 1000 + micro_index,
        "signatures": ["sg_test"],
        "encoded_tx": f"tx_{tx_hash}",
        "tx": body,
    }


class FakeMiddlewareClient:
    """
    A chain held in memory, served through the MiddlewareClient interface.

    Every height has one key block and one micro block carrying
    ``txs_per_height`` contract calls. ``fork_from`` rewrites heights with
    new hashes.
    """

    def __init__(self, tip: int = 0, txs_per_height: int = 1, page_limit: int = 100):
        self.page_limit = page_limit
        self.txs_per_height = txs_per_height
        self.key_blocks: Dict[int, Dict[str, Any]] = {}
        self.micro_blocks: Dict[str, List[Dict[str, Any]]] = {}
        self.txs: Dict[int, List[Dict[str, Any]]] = {}
        self.fail_heights: Set[int] = set()
        self.tip = 0
        self.extend(tip)

    def _build_height(self, height: int, fork: str = "a"):
        key_hash = f"kh_{fork}_{height}"
        micro_hash = f"mh_{fork}_{height}"
        self.key_blocks[height] = {
            "hash": key_hash,
            "height": height,
            "prev_key_hash": f"kh_{fork}_{height - 1}",
            "time": height * 1000,
            "micro_blocks_count": 1,
            "transactions_count": self.txs_per_height,
            "beneficiary_reward": 1000000,
            "nonce": 42,
            "pow": [1, 2, 3],
        }
        self.micro_blocks[key_hash] = [{
            "hash": micro_hash,
            "height": height,
            "prev_key_hash": key_hash,
            "time": height * 1000 + 1,
            "transactions_count": self.txs_per_height,
            "micro_block_index": 0,
        }]
        self.txs[height] = [
            make_tx(f"th_{fork}_{height}_{i}", height, micro_hash, micro_index=i)
            for i in range(self.txs_per_height)
        ]

    def extend(self, to_height: int):
        for height in range(self.tip + 1, to_height + 1):
            self._build_height(height)
        self.tip = max(self.tip, to_height)

    def fork_from(self, height: int, fork: str = "b"):
        for h in range(height, self.tip + 1):
            old_hash = self.key_blocks[h]["hash"]
            self.micro_blocks.pop(old_hash, None)
            self._build_height(h, fork)

    def tx_hashes(self, height: int) -> List[str]:
        return [tx["hash"] for tx in self.txs.get(height, [])]

    def _check(self, start_height: int, end_height: int):
        failing = [h for h in self.fail_heights if start_height <= h <= end_height]
        if failing:
            raise MiddlewareError("Middleware unavailable", {"heights": failing})

    async def get_tip_height(self) -> int:
        return self.tip

    async def get_key_blocks(self, start_height: int, end_height: int) -> List[Dict[str, Any]]:
        self._check(start_height, end_height)
        return [dict(self.key_blocks[h]) for h in range(start_height, end_height + 1) if h in self.key_blocks]

    async def get_key_block(self, hash_or_height) -> Optional[Dict[str, Any]]:
        for block in self.key_blocks.values():
            if block["hash"] == hash_or_height or str(block["height"]) == str(hash_or_height):
                return dict(block)
        return None

    async def get_micro_blocks(self, key_block_hash: str) -> List[Dict[str, Any]]:
        return [dict(mb) for mb in self.micro_blocks.get(key_block_hash, [])]

    async def get_micro_block(self, micro_block_hash: str) -> Optional[Dict[str, Any]]:
        for micro_blocks in self.micro_blocks.values():
            for mb in micro_blocks:
                if mb["hash"] == micro_block_hash:
                    return dict(mb)
        return None

    async def iter_transactions(self, start_height: int, end_height: int, backward: bool = False):
        self._check(start_height, end_height)
        heights = range(start_height, end_height + 1)
        txs = [tx for h in heights for tx in self.txs.get(h, [])]
        if backward:
            txs.reverse()
        for i in range(0, len(txs), self.page_limit):
            yield [dict(tx) for tx in txs[i:i + self.page_limit]]


class FakeWebSocket:
    """Records subscriptions instead of opening a connection."""

    def __init__(self):
        self.handlers: Dict[str, Callable] = {}
        self.connected = False
        self.started = False

    @property
    def is_connected(self) -> bool:
        return self.connected

    def is_subscribed(self, channel: str) -> bool:
        return self.connected and channel in self.handlers

    async def start(self):
        self.started = True
        self.connected = True

    async def stop(self):
        self.connected = False
        self.handlers.clear()

    async def subscribe(self, channel: str, handler, source: str = "mdw"):
        self.handlers[channel] = handler

    async def unsubscribe(self, channel: str):
        self.handlers.pop(channel, None)


def accept_all(tx: Tx) -> bool:
    return True


class RecordingPlugin(Plugin):
    """Records every delivered batch; optionally fails."""

    name = "recorder"
    version = 1

    def __init__(
        self,
        name: Optional[str] = None,
        version: int = 1,
        filters: Optional[List[PluginFilter]] = None,
        fail: bool = False,
        start_height: int = 1,
    ):
        if name:
            self.name = name
        self.version = version
        self._filters = filters if filters is not None else [PluginFilter(predicate=accept_all)]
        self.fail = fail
        self.start_height = start_height
        self.batches: List[tuple] = []
        self.reorgs: List[List[str]] = []

    def start_from_height(self) -> int:
        return self.start_height

    def filters(self) -> List[PluginFilter]:
        return self._filters

    async def process_batch(self, txs: Sequence[Tx], direction: SyncDirection) -> None:
        if self.fail:
            raise RuntimeError(f"{self.name} cannot process batch")
        self.batches.append(([tx.hash for tx in txs], direction))

    async def on_reorg(self, removed_hashes: Sequence[str]) -> None:
        self.reorgs.append(list(removed_hashes))

    def hashes(self, direction: Optional[SyncDirection] = None) -> List[str]:
        return [
            tx_hash
            for hashes, batch_direction in self.batches
            if direction is None or batch_direction == direction
            for tx_hash in hashes
        ]


class TokenPlugin(BasePlugin):
    """BasePlugin over token contract calls, decoding the function name."""

    name = "token"
    version = 1

    def __init__(self, version: int = 1):
        self.version = version
        super().__init__()
        self.processed: List[tuple] = []

    def filters(self) -> List[PluginFilter]:
        return [PluginFilter(type="contract_call", contract_ids=[CONTRACT_ID], predicate=accept_all)]

    async def decode_data(self, tx: Tx):
        return {"function": tx.function}

    async def process_transaction(self, tx: Tx, direction: SyncDirection) -> None:
        self.processed.append((tx.hash, direction))


async def count_rows(model, *criteria) -> int:
    async with get_async_session() as session:
        result = await session.execute(select(func.count()).select_from(model).where(*criteria))
        return result.scalar_one()

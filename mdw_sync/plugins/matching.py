"""
Transaction matching against plugin filters.

Two paths exist and neither subsumes the other:

- fan-out (batch processor): predicate-only, a filter without a predicate
  matches nothing;
- catch-up (store queries): structural type / contract / function filters
  narrow the query, predicates are then applied in memory.
"""

from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Sequence

from sqlalchemy import Select, and_, or_, true

from mdw_sync.models.tx import Tx


FILTER_TYPE_TO_TX_TYPE = {
    "contract_call": "ContractCallTx",
    "spend": "SpendTx",
}


@dataclass
class PluginFilter:
    """What a plugin wants to receive. ``type`` is "contract_call" or "spend"."""
    type: Optional[str] = None
    contract_ids: List[str] = field(default_factory=list)
    functions: List[str] = field(default_factory=list)
    predicate: Optional[Callable[[Tx], bool]] = None

    def __post_init__(self):
        if self.type is not None and self.type not in FILTER_TYPE_TO_TX_TYPE:
            raise ValueError(f"Unknown filter type: {self.type}")

    @property
    def is_structural(self) -> bool:
        return self.type is not None or bool(self.contract_ids) or bool(self.functions)


def matches_predicate_filter(tx: Tx, plugin_filter: PluginFilter) -> bool:
    if plugin_filter.predicate is None:
        return False
    return bool(plugin_filter.predicate(tx))


def matches_predicate_filters(tx: Tx, filters: Sequence[PluginFilter]) -> bool:
    """Fan-out match: true when any filter's predicate accepts the tx."""
    return any(matches_predicate_filter(tx, f) for f in filters)


def filter_batch(txs: Iterable[Tx], filters: Sequence[PluginFilter]) -> List[Tx]:
    if not filters:
        return []
    return [tx for tx in txs if matches_predicate_filters(tx, filters)]


def matches_structural_filter(tx: Tx, plugin_filter: PluginFilter) -> bool:
    """Catch-up match for one filter: structural fields, then the predicate."""
    if plugin_filter.type is not None:
        if tx.type != FILTER_TYPE_TO_TX_TYPE.get(plugin_filter.type):
            return False
    if plugin_filter.contract_ids and tx.contract_id not in plugin_filter.contract_ids:
        return False
    if plugin_filter.functions and tx.function not in plugin_filter.functions:
        return False
    if plugin_filter.predicate is not None:
        return bool(plugin_filter.predicate(tx))
    return True


def matches_structural_filters(tx: Tx, filters: Sequence[PluginFilter]) -> bool:
    return any(matches_structural_filter(tx, f) for f in filters)


def _structural_clause(plugin_filter: PluginFilter):
    conditions = []
    if plugin_filter.type is not None:
        conditions.append(Tx.type == FILTER_TYPE_TO_TX_TYPE.get(plugin_filter.type))
    if plugin_filter.contract_ids:
        conditions.append(Tx.contract_id.in_(plugin_filter.contract_ids))
    if plugin_filter.functions:
        conditions.append(Tx.function.in_(plugin_filter.functions))
    if not conditions:
        return true()
    return and_(*conditions)


def apply_structural_filters(
    query: Select,
    filters: Sequence[PluginFilter],
) -> Optional[Select]:
    """
    Narrow a ``Tx`` query by the filters' structural fields (OR across filters).

    Returns None when there are no filters, meaning nothing can match.
    """
    if not filters:
        return None
    return query.where(or_(*[_structural_clause(f) for f in filters]))

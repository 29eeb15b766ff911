# mapper/binder.py
"""
Re-attach saved mappings to a freshly normalized tree

Tier 1 matches on the exact target path. Tier 2 (schema drift) searches the
tree breadth-first for a node with the same (name, type); a single unclaimed
candidate is accepted, several candidates are rejected as ambiguous. Records
with no match at all are orphaned. Nothing is ever deleted here.
"""
import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from extractors.schema_normalizer import display_path, iter_nodes, node_name
from mapper.schemas import BoundNode, MappingRecord, Notification, TreeNode
from utils.decorators import log_execution_time

logger = logging.getLogger(__name__)


class BindingAmbiguity(BaseModel):
    """Record whose fallback match was rejected because it was not unique"""
    mapping: MappingRecord
    candidates: List[str] = Field(default_factory=list, description="Node ids that tied")
    reason: str = ''

    @property
    def message(self) -> str:
        return (f"Mapping '{self.mapping.field.label}' -> {display_path(self.mapping.target_node_id)} "
                f"is ambiguous: {self.reason}")


class OrphanedMapping(BaseModel):
    """Record whose target no longer exists in the tree"""
    mapping: MappingRecord

    @property
    def message(self) -> str:
        return (f"Mapping '{self.mapping.field.label}' -> {display_path(self.mapping.target_node_id)} "
                f"has no matching node in the current schema")


class Relink(BaseModel):
    """Record re-attached by the (name, type) fallback"""
    mapping_id: str
    old_target_id: str
    new_target_id: str


class BindingReport(BaseModel):
    exact: List[str] = Field(default_factory=list, description="Mapping ids matched by path")
    relinked: List[Relink] = Field(default_factory=list)
    ambiguous: List[BindingAmbiguity] = Field(default_factory=list)
    orphaned: List[OrphanedMapping] = Field(default_factory=list)

    @property
    def has_anomalies(self) -> bool:
        return bool(self.ambiguous or self.orphaned)

    def notifications(self) -> List[Notification]:
        """Itemized list for the review panel"""
        items = [Notification(severity='warn', message=a.message) for a in self.ambiguous]
        items += [Notification(severity='warn', message=o.message) for o in self.orphaned]
        items += [
            Notification(severity='info', message=f"Mapping re-attached: {display_path(r.old_target_id)} "
                                                  f"-> {display_path(r.new_target_id)}")
            for r in self.relinked
        ]
        return items


class BindResult(BaseModel):
    tree: BoundNode
    report: BindingReport

    def find(self, node_id: str) -> Optional[BoundNode]:
        stack = [self.tree]
        while stack:
            node = stack.pop()
            if node.id == node_id:
                return node
            stack.extend(node.children)
        return None

    @property
    def mapped_count(self) -> int:
        count = 0
        stack = [self.tree]
        while stack:
            node = stack.pop()
            count += int(node.mapped)
            stack.extend(node.children)
        return count


def _decorate(node: TreeNode, claims: Dict[str, MappingRecord]) -> BoundNode:
    record = claims.get(node.id)
    return BoundNode(
        id=node.id,
        name=node.name,
        type=node.type,
        description=node.description,
        obligation=node.obligation,
        rules=list(node.rules),
        value_preview=node.value_preview,
        mapped=record is not None,
        mapping=record,
        mapping_ref=record.mapping_id if record else None,
        children=[_decorate(child, claims) for child in node.children],
    )


@log_execution_time
def bind(tree: TreeNode, mappings: List[MappingRecord]) -> BindResult:
    """
    Decorate a tree with its mappings and report what could not be attached

    Args:
        tree: Root produced by normalize(); not modified
        mappings: Records from the mapping store, in store order

    Returns:
        BindResult with the decorated tree and the anomaly report
    """
    nodes = list(iter_nodes(tree))
    by_id = {node.id: node for node in nodes}
    claims: Dict[str, MappingRecord] = {}
    report = BindingReport()
    pending: List[MappingRecord] = []

    for record in mappings:
        if record.target_node_id in by_id:
            if record.target_node_id in claims:
                report.ambiguous.append(BindingAmbiguity(
                    mapping=record,
                    candidates=[record.target_node_id],
                    reason=f"target already carries mapping {claims[record.target_node_id].mapping_id}",
                ))
                continue
            claims[record.target_node_id] = record
            report.exact.append(record.mapping_id)
        else:
            pending.append(record)

    fallback_claimed = set()
    for record in pending:
        name = record.target_name or node_name(record.target_node_id)
        candidates = [
            node.id for node in nodes
            if node.name == name and node.id not in claims
            and (not record.target_type or node.type == record.target_type)
        ]
        free = [node_id for node_id in candidates if node_id not in fallback_claimed]

        if not candidates:
            report.orphaned.append(OrphanedMapping(mapping=record))
        elif len(candidates) > 1:
            report.ambiguous.append(BindingAmbiguity(
                mapping=record,
                candidates=candidates,
                reason=f"{len(candidates)} nodes named '{name}' of type '{record.target_type}'",
            ))
        elif not free:
            report.ambiguous.append(BindingAmbiguity(
                mapping=record,
                candidates=candidates,
                reason=f"{candidates[0]} was already re-attached to another mapping",
            ))
        else:
            new_id = free[0]
            fallback_claimed.add(new_id)
            report.relinked.append(Relink(
                mapping_id=record.mapping_id,
                old_target_id=record.target_node_id,
                new_target_id=new_id,
            ))

    for relink in report.relinked:
        record = next(r for r in pending if r.mapping_id == relink.mapping_id)
        claims[relink.new_target_id] = record

    if report.has_anomalies:
        logger.warning(f"Binding: {len(report.ambiguous)} ambiguous, {len(report.orphaned)} orphaned mappings")
    logger.info(f"Bound {len(claims)} of {len(mappings)} mappings "
                f"({len(report.exact)} exact, {len(report.relinked)} re-attached)")

    return BindResult(tree=_decorate(tree, claims), report=report)

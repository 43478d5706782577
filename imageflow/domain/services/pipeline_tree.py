"""Rebuild the lineage DAG of a pipeline into a displayable, leveled tree.

Only the parent pointers stored on each version are used. The builder never
drops a version: records with no resolvable parent (legacy rows, deleted
parents, cycles) hang directly under the original, and duplicate ids are
shown once.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from imageflow.domain.entities.pipeline import PipelineEntity, VersionEntity

ORIGINAL_NAME = "Original"


@dataclass
class TreeNode:
    id: str
    name: str
    url: str
    version: VersionEntity | None = None  # None for the original
    children: list[TreeNode] = field(default_factory=list)

    @property
    def is_original(self) -> bool:
        return self.version is None


@dataclass(frozen=True)
class TreeSource:
    id: str
    name: str
    url: str


@dataclass(frozen=True)
class TreeLevel:
    source: TreeSource
    children: list[VersionEntity]
    level: int  # 0 = direct children of the original


def _display_name(version: VersionEntity) -> str:
    return f"{version.ai_model or 'AI'} - {version.operation.replace('-', ' ')}"


def _unique_versions(versions: list[VersionEntity]) -> list[VersionEntity]:
    seen: set[str] = set()
    unique: list[VersionEntity] = []
    for version in versions:
        if version.id in seen:
            continue
        seen.add(version.id)
        unique.append(version)
    return unique


def _parent_id(version: VersionEntity, original_id: str, known_ids: set[str]) -> str:
    # either pointer may name a version; anything unresolvable falls back to the original
    for parent in (version.source_processed_version_id, version.source_image_id):
        if parent and parent != version.id and parent in known_ids:
            return parent
    return original_id


def build_pipeline_tree(pipeline: PipelineEntity) -> TreeNode:
    versions = _unique_versions(pipeline.versions)
    known_ids = {v.id for v in versions}
    children_of: dict[str, list[VersionEntity]] = {}
    for version in versions:
        children_of.setdefault(_parent_id(version, pipeline.id, known_ids), []).append(version)

    root = TreeNode(id=pipeline.id, name=ORIGINAL_NAME, url=pipeline.url or "")
    claimed: set[str] = set()

    def attach(node: TreeNode) -> None:
        for child in children_of.get(node.id, []):
            if child.id in claimed:
                continue
            claimed.add(child.id)
            child_node = TreeNode(id=child.id, name=_display_name(child), url=child.url, version=child)
            node.children.append(child_node)
            attach(child_node)

    attach(root)

    # Versions only reachable through a cycle never get claimed by the walk
    for version in versions:
        if version.id not in claimed:
            claimed.add(version.id)
            orphan = TreeNode(id=version.id, name=_display_name(version), url=version.url, version=version)
            root.children.append(orphan)
            attach(orphan)
    return root


def flatten_pipeline_tree(root: TreeNode) -> list[TreeLevel]:
    levels: list[TreeLevel] = []

    def walk(node: TreeNode, level: int) -> None:
        if not node.children:
            return
        levels.append(
            TreeLevel(
                source=TreeSource(id=node.id, name=node.name, url=node.url),
                children=[child.version for child in node.children if child.version is not None],
                level=level,
            )
        )
        for child in node.children:
            walk(child, level + 1)

    walk(root, 0)
    return levels


def build_pipeline_levels(pipeline: PipelineEntity) -> list[TreeLevel]:
    levels = flatten_pipeline_tree(build_pipeline_tree(pipeline))
    if not levels and pipeline.versions:
        levels = [
            TreeLevel(
                source=TreeSource(id=pipeline.id, name=ORIGINAL_NAME, url=pipeline.url or ""),
                children=_unique_versions(pipeline.versions),
                level=0,
            )
        ]
    return levels

"""Cache invalidation: tags, versions and dependency graphs.

Three independent mechanisms:

- Tags: every physical key written with a tag is added to the tag's set.
  ``invalidate_tag`` deletes every member, then the set itself.
- Versions: each logical key has a bump counter. Reads and writes go to
  ``{key}:v{version}``, so bumping the version orphans older entries without
  deleting them; they expire through their own TTL.
- Dependencies: ``add_dependency(dependent, depends_on)`` records an edge in
  both directions. ``invalidate_key(K)`` walks the reverse edges breadth
  first and invalidates every key that transitively depends on K.

Example:
    manager = InvalidationManager(store, codec)
    await manager.add_dependency("order:7:summary", "order:7")

    report = await manager.invalidate_key("order:7")
    # report.invalidated == ["cc:k:order:7", "cc:k:order:7:summary"]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from cachecore.errors import DependencyCycleWarning
from cachecore.keys import KeyCodec, LogicalKey
from cachecore.store.base import BatchOp, CacheStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 32


@dataclass
class InvalidationReport:
    """Outcome of a dependency-aware invalidation."""

    root: str
    invalidated: list[str] = field(default_factory=list)
    deleted: int = 0
    cycles: list[DependencyCycleWarning] = field(default_factory=list)
    truncated: bool = False
    failed: list[str] = field(default_factory=list)


class InvalidationManager:
    """Tag, version and dependency invalidation over a CacheStore."""

    def __init__(self, store: CacheStore, codec: KeyCodec, max_depth: int = DEFAULT_MAX_DEPTH):
        if max_depth < 1:
            raise ValueError(f"max_depth must be >= 1, got {max_depth}")
        self.store = store
        self.codec = codec
        self.max_depth = max_depth

    # -------------------------------------------------------------------------
    # Versions
    # -------------------------------------------------------------------------

    async def current_version(self, key: LogicalKey) -> int:
        """Current version of ``key``; 1 until the first bump."""
        raw = await self.store.get(self.codec.version_counter(key))
        return _version_from_counter(raw)

    async def physical_key(self, key: LogicalKey) -> str:
        """Physical key holding the current version of ``key``."""
        return self.codec.physical(key, await self.current_version(key))

    async def bump_version(self, key: LogicalKey) -> int:
        """Move ``key`` to a new version and return it.

        Entries under the old version are left in place to expire by TTL.
        Reads that already resolved the old physical key are unaffected.
        """
        bumps = await self.store.increment(self.codec.version_counter(key))
        version = bumps + 1
        logger.debug(f"Bumped {self.codec.logical(key)} to v{version}")
        return version

    # -------------------------------------------------------------------------
    # Tags
    # -------------------------------------------------------------------------

    async def tag_keys(self, tag: str, *physical_keys: str) -> int:
        """Add physical keys to a tag's membership set."""
        if not physical_keys:
            return 0
        return await self.store.sadd(self.codec.tag(tag), *physical_keys)

    async def untag_keys(self, tag: str, *physical_keys: str) -> int:
        """Remove membership only; the entries themselves are kept."""
        if not physical_keys:
            return 0
        return await self.store.srem(self.codec.tag(tag), *physical_keys)

    async def tagged(self, tag: str) -> set[str]:
        return await self.store.smembers(self.codec.tag(tag))

    async def invalidate_tag(self, tag: str) -> int:
        """Delete every key carrying ``tag``, then drop them from the tag.

        Only the members read here are removed from the tag set, so a key
        tagged while this runs keeps its membership. An empty or unknown tag
        is a no-op. Returns the number of entries actually deleted.
        """
        tag_key = self.codec.tag(tag)
        members = await self.store.smembers(tag_key)
        if not members:
            logger.debug(f"Tag {tag} has no members, nothing to invalidate")
            return 0

        ordered = sorted(members)
        ops = [BatchOp.delete(member) for member in ordered]
        ops.append(BatchOp.srem(tag_key, *ordered))
        results = await self.store.batch(ops)

        deleted = 0
        for op, result in zip(ops[:-1], results[:-1], strict=True):
            if result.ok:
                deleted += int(result.value or 0)
            else:
                logger.error(f"Failed to delete {op.key} for tag {tag}: {result.error}")

        logger.info(f"Invalidated tag {tag}: {deleted}/{len(members)} entries deleted")
        return deleted

    # -------------------------------------------------------------------------
    # Dependencies
    # -------------------------------------------------------------------------

    async def add_dependency(self, dependent: LogicalKey, depends_on: LogicalKey) -> None:
        """Record that ``dependent`` must be invalidated whenever ``depends_on`` is."""
        dependent_lk = self.codec.logical(dependent)
        depends_on_lk = self.codec.logical(depends_on)
        if dependent_lk == depends_on_lk:
            logger.warning(f"Ignoring self-dependency for {dependent_lk}")
            return

        results = await self.store.batch(
            [
                BatchOp.sadd(self.codec.depends_on(dependent), depends_on_lk),
                BatchOp.sadd(self.codec.dependents_of(depends_on), dependent_lk),
            ]
        )
        for result in results:
            if not result.ok:
                raise result.error  # type: ignore[misc]

    async def remove_dependency(self, dependent: LogicalKey, depends_on: LogicalKey) -> None:
        await self.store.batch(
            [
                BatchOp.srem(self.codec.depends_on(dependent), self.codec.logical(depends_on)),
                BatchOp.srem(self.codec.dependents_of(depends_on), self.codec.logical(dependent)),
            ]
        )

    async def dependencies(self, key: LogicalKey) -> set[str]:
        """Keys ``key`` depends on, as rendered logical keys."""
        return await self.store.smembers(self.codec.depends_on(key))

    async def dependents(self, key: LogicalKey) -> set[str]:
        """Keys that directly depend on ``key``, as rendered logical keys."""
        return await self.store.smembers(self.codec.dependents_of(key))

    async def invalidate_key(self, key: LogicalKey) -> InvalidationReport:
        """Invalidate ``key`` and everything that transitively depends on it.

        The walk is breadth first with a visited set owned by this call, so
        each key is invalidated exactly once and cycles terminate. A cycle is
        logged as a warning and recorded on the report; reaching
        ``max_depth`` stops the walk below that depth and marks the report
        truncated. Neither condition raises.
        """
        root = self.codec.logical(key)
        report = InvalidationReport(root=root)
        visited: set[str] = {root}
        # Each frontier entry carries its ancestor path for cycle reporting
        frontier: list[tuple[tuple[str, ...], tuple[str, ...]]] = [
            (self.codec.components(key), (root,))
        ]
        depth = 0

        while frontier:
            # One round trip for versions + dependents of the whole level
            lookups: list[BatchOp] = []
            for components, _path in frontier:
                lookups.append(BatchOp.get(self.codec.version_counter(components)))
                lookups.append(BatchOp.smembers(self.codec.dependents_of(components)))
            looked_up = await self.store.batch(lookups)

            deletes: list[BatchOp] = []
            next_frontier: list[tuple[tuple[str, ...], tuple[str, ...]]] = []

            for i, (components, path) in enumerate(frontier):
                node = path[-1]
                version_result = looked_up[2 * i]
                dependents_result = looked_up[2 * i + 1]

                if not version_result.ok:
                    report.failed.append(node)
                    logger.error(f"Could not resolve version of {node}: {version_result.error}")
                    continue
                version = _version_from_counter(version_result.value)
                deletes.append(BatchOp.delete(self.codec.physical(components, version)))
                report.invalidated.append(node)

                if not dependents_result.ok:
                    report.failed.append(node)
                    logger.error(f"Could not read dependents of {node}: {dependents_result.error}")
                    continue

                for dependent in sorted(dependents_result.value):
                    if dependent in path:
                        warning = DependencyCycleWarning(dependent, [*path, dependent])
                        report.cycles.append(warning)
                        logger.warning(f"Dependency cycle detected: {warning}")
                        continue
                    if dependent in visited:
                        continue
                    if depth + 1 > self.max_depth:
                        if not report.truncated:
                            logger.warning(
                                f"Dependency walk from {root} exceeded max depth "
                                f"{self.max_depth}; remaining dependents not invalidated"
                            )
                        report.truncated = True
                        continue
                    visited.add(dependent)
                    next_frontier.append((self._components_of(dependent), (*path, dependent)))

            if deletes:
                for op, result in zip(deletes, await self.store.batch(deletes), strict=True):
                    if result.ok:
                        report.deleted += int(result.value or 0)
                    else:
                        report.failed.append(op.key)
                        logger.error(f"Failed to delete {op.key}: {result.error}")

            frontier = next_frontier
            depth += 1

        logger.info(
            f"Invalidated {root}: {len(report.invalidated)} keys, "
            f"{report.deleted} entries deleted"
        )
        return report

    def _components_of(self, rendered: str) -> tuple[str, ...]:
        parsed = self.codec.parse(rendered, versioned=False)
        if parsed is None:
            raise ValueError(f"Foreign key in dependency graph: {rendered}")
        return parsed["components"]  # type: ignore[return-value]


def _version_from_counter(raw: bytes | None) -> int:
    return int(raw) + 1 if raw is not None else 1

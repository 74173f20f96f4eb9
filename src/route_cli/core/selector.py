"""Node selection.

Chooses the node a ``run`` goes through:

1. Only supported nodes are candidates.
2. The persisted node, if it is still a candidate, is probed first and wins
   immediately when reachable.
3. The remaining candidates are ordered by region priority
   (Singapore, Korea, United States, everything else); ties keep
   subscription order.
4. The first reachable candidate in that order wins.

Probes may run on a small thread pool, but results are consumed in
priority order, so a slow high-priority success still beats a fast
low-priority one. The selector never writes state itself: it returns the
updated :class:`RuntimeState` and the caller commits it.

Example:
    selector = NodeSelector(probe=TcpProbe(timeout=2.0), workers=4)
    selection = selector.select(result.nodes, cfg.runtime)
    save_config(paths, cfg.with_runtime(selection.state))
"""

from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime

from loguru import logger

from route_cli.core.exceptions import NoReachableNodeError
from route_cli.core.nodes import Node
from route_cli.core.probe import Probe
from route_cli.core.settings import RuntimeState


@dataclass(frozen=True)
class Selection:
    """Outcome of a successful selection."""

    node: Node
    state: RuntimeState


def order_by_priority(nodes: Sequence[Node]) -> list[Node]:
    """Stable-sort nodes by region priority."""
    return sorted(nodes, key=lambda node: node.region)


class NodeSelector:
    """Pick one reachable node.

    Args:
        probe: Reachability check, called once per probed node
        workers: Number of probes allowed to run at the same time
    """

    def __init__(self, probe: Probe, workers: int = 1) -> None:
        self.probe = probe
        self.workers = max(1, workers)

    def _check(self, node: Node) -> bool:
        try:
            ok = bool(self.probe(node))
        except Exception:
            logger.exception(f"Probe for {node.name} raised")
            ok = False
        logger.info(f"[{'OK' if ok else 'FAIL'}] probe {node.name} ({node.address})")
        return ok

    def _first_reachable(self, candidates: list[Node]) -> Node | None:
        if self.workers == 1 or len(candidates) == 1:
            return next((node for node in candidates if self._check(node)), None)

        executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="probe")
        try:
            futures = [executor.submit(self._check, node) for node in candidates]
            for node, future in zip(candidates, futures, strict=True):
                if future.result():
                    return node
            return None
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def select(self, nodes: Sequence[Node], state: RuntimeState) -> Selection:
        """Select a reachable node.

        Args:
            nodes: All nodes from the subscription, in subscription order
            state: Persisted runtime state (not modified)

        Returns:
            Selection: The chosen node and the runtime state to commit

        Raises:
            NoReachableNodeError: If there are no candidates or none is reachable
        """
        candidates = [node for node in nodes if node.is_supported]
        if not candidates:
            raise NoReachableNodeError("No supported node found in the subscription")

        preferred = None
        if state.selected_node:
            preferred = next((node for node in candidates if node.name == state.selected_node), None)
            if preferred is None:
                logger.debug(f"Persisted node '{state.selected_node}' is no longer a candidate")

        if preferred is not None:
            if self._check(preferred):
                return Selection(node=preferred, state=state.select(preferred.name, datetime.now(tz=UTC)))
            candidates = [node for node in candidates if node is not preferred]

        winner = self._first_reachable(order_by_priority(candidates))
        if winner is None:
            msg = "No reachable node after probing. Check the network or update the subscription."
            raise NoReachableNodeError(msg)

        logger.info(f"Selected node {winner.name} ({winner.region.label})")
        return Selection(node=winner, state=state.select(winner.name, datetime.now(tz=UTC)))

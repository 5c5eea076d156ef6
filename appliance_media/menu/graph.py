"""Traversal of a kit's driver decision graph.

``DecisionGraph.resolve`` starts at the document root (or a given node) and
follows these rules:

- Entering any node merges its ``variables`` into the caller's mapping; a
  later node overwrites an earlier value for the same key.
- A choice node shows its options numbered from 0 and re-prompts until the
  answer is a valid number. An empty answer selects option 0.
- A redirect node jumps to its target without asking anything.
- A notice node warns the operator, then continues at ``next`` or ends the
  walk with no artifacts when it has none.
- A fetch node ends the walk: every target is fetched and verified, and
  their local paths are returned.

Revisiting a node without entering a choice node in between raises
``DecisionGraphError``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, MutableMapping, Optional, Protocol

from appliance_media.domain import Artifact
from appliance_media.exceptions import DecisionGraphError
from appliance_media.logging import LoggerFactory
from appliance_media.menu.model import (
    ChoiceNode,
    DecisionNode,
    FetchNode,
    GraphDocument,
    NoticeNode,
    RedirectNode,
    parse_graph,
)

log = LoggerFactory.for_menu()


class Operator(Protocol):
    def ask(self, prompt: str) -> str: ...

    def show_options(self, label: str, options: list[str]) -> None: ...

    def info(self, message: str) -> None: ...

    def warn(self, message: str) -> None: ...


class ArtifactSource(Protocol):
    def fetch_verified(
        self, url: str, friendly_name: str, dest_name: Optional[str] = None
    ) -> Artifact: ...


class DecisionGraph:
    """Walks a validated decision graph, asking the operator at choice nodes."""

    def __init__(
        self,
        document: GraphDocument,
        fetcher: Optional[ArtifactSource] = None,
        operator: Optional[Operator] = None,
    ) -> None:
        self.document = document
        self.fetcher = fetcher
        self.operator = operator

    @property
    def root(self) -> str:
        return self.document.root

    def node(self, node_id: str) -> DecisionNode:
        return self.document.nodes[node_id]

    def resolve(
        self, variables: MutableMapping[str, str], root: Optional[str] = None
    ) -> list[Path]:
        """Walk from ``root`` until a fetch node or an ending notice.

        ``variables`` is updated in place with every entered node's variables.

        Returns:
            Local paths of the verified artifacts of the terminal fetch node,
            or an empty list when the walk ended at a notice.

        Raises:
            DecisionGraphError: Unknown start node or a cycle with no choice in it
        """
        current: Optional[str] = root or self.document.root
        if current not in self.document.nodes:
            raise DecisionGraphError(f"Unknown start node '{current}'")

        since_choice: list[str] = []
        while current is not None:
            if current in since_choice:
                path = " -> ".join([*since_choice, current])
                raise DecisionGraphError(f"Decision graph cycle without a choice: {path}")
            since_choice.append(current)

            node = self.node(current)
            self._enter(node, variables)

            if isinstance(node, FetchNode):
                return self._fetch(node)
            if isinstance(node, ChoiceNode):
                current = self._choose(node)
                since_choice = []
            elif isinstance(node, RedirectNode):
                log.debug(f"Redirect {node.node_id} -> {node.target}")
                current = node.target
            elif isinstance(node, NoticeNode):
                log.warning(f"Notice at {node.node_id}: {node.message}")
                self._warn(node.message)
                current = node.next
        log.info("Decision graph ended without artifacts")
        return []

    def _enter(self, node: DecisionNode, variables: MutableMapping[str, str]) -> None:
        log.debug(f"Entering node {node.node_id} ({type(node).__name__})")
        for key, value in node.variables.items():
            if variables.get(key) != value:
                log.info(f"Setting {key}={value}")
            variables[key] = value

    def _choose(self, node: ChoiceNode) -> str:
        labels = [option.label for option in node.options]
        operator = self._require_operator()
        operator.show_options(node.label, labels)
        while True:
            answer = operator.ask(f"{node.label} [0-{len(labels) - 1}, default 0]").strip()
            index = _parse_index(answer, len(labels))
            if index is not None:
                break
            operator.warn(f"Enter a number between 0 and {len(labels) - 1}")
        option = node.options[index]
        log.info(f"{node.label}: selected '{option.label}'")
        return option.target

    def _fetch(self, node: FetchNode) -> list[Path]:
        if self.fetcher is None:
            raise DecisionGraphError(f"Node '{node.node_id}' needs an artifact fetcher")
        paths = []
        for target in node.targets:
            artifact = self.fetcher.fetch_verified(target.url, target.name or target.url)
            paths.append(artifact.local_path)
        log.info(f"Resolved {len(paths)} artifact(s) at {node.node_id}")
        return paths

    def _warn(self, message: str) -> None:
        if self.operator is not None:
            self.operator.warn(message)

    def _require_operator(self) -> Operator:
        if self.operator is None:
            raise DecisionGraphError("Choice nodes need an operator to answer them")
        return self.operator


def _parse_index(answer: str, count: int) -> Optional[int]:
    if not answer:
        return 0
    if not answer.isdigit():
        return None
    index = int(answer)
    return index if 0 <= index < count else None


def load_graph(
    document: Any,
    fetcher: Optional[ArtifactSource] = None,
    operator: Optional[Operator] = None,
) -> DecisionGraph:
    """Validate ``document`` and return a graph ready to resolve."""
    return DecisionGraph(parse_graph(document), fetcher=fetcher, operator=operator)

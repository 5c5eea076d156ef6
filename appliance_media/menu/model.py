"""Decision graph nodes and the schema check applied when a kit is loaded.

A graph document looks like::

    {
      "root": "hardware",
      "nodes": {
        "hardware": {"type": "choice", "label": "Select the appliance model",
                     "options": [{"label": "Model A", "node": "model-a"},
                                 {"label": "Model B", "node": {"type": "redirect",
                                                               "target": "model-a"}}]},
        "model-a": {"type": "fetch", "targets": ["https://.../DriversA.msi"],
                    "variables": {"FirmwareMode": "UEFI"}}
      }
    }

Every node may carry ``variables``; they are merged into the traversal's
variable environment when the node is entered.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

from appliance_media.exceptions import DecisionGraphError


@dataclass(frozen=True)
class FetchTarget:
    url: str
    name: str = ""


@dataclass(frozen=True)
class FetchNode:
    node_id: str
    targets: tuple[FetchTarget, ...]
    variables: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ChoiceOption:
    label: str
    target: str


@dataclass(frozen=True)
class ChoiceNode:
    node_id: str
    label: str
    options: tuple[ChoiceOption, ...]
    variables: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RedirectNode:
    node_id: str
    target: str
    variables: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class NoticeNode:
    node_id: str
    message: str
    next: Optional[str] = None
    variables: Mapping[str, str] = field(default_factory=dict)


DecisionNode = Union[FetchNode, ChoiceNode, RedirectNode, NoticeNode]


@dataclass(frozen=True)
class GraphDocument:
    root: str
    nodes: Mapping[str, DecisionNode]


def _variables(node_id: str, raw: Any) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise DecisionGraphError(f"Node '{node_id}': variables must be an object")
    variables = {}
    for key, value in raw.items():
        if not isinstance(value, (str, int, float, bool)):
            raise DecisionGraphError(
                f"Node '{node_id}': variable '{key}' must be a scalar value"
            )
        variables[str(key)] = str(value)
    return variables


def _text(node_id: str, raw: Mapping[str, Any], key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value:
        raise DecisionGraphError(f"Node '{node_id}': '{key}' is required")
    return value


def _fetch_target(node_id: str, raw: Any) -> FetchTarget:
    if isinstance(raw, str) and raw:
        return FetchTarget(url=raw)
    if isinstance(raw, Mapping) and isinstance(raw.get("url"), str) and raw["url"]:
        return FetchTarget(url=raw["url"], name=str(raw.get("name", "")))
    raise DecisionGraphError(f"Node '{node_id}': invalid fetch target {raw!r}")


class _Parser:
    def __init__(self) -> None:
        self.nodes: dict[str, DecisionNode] = {}

    def add(self, node_id: str, raw: Any) -> str:
        if not isinstance(raw, Mapping):
            raise DecisionGraphError(f"Node '{node_id}' must be an object")
        if node_id in self.nodes:
            raise DecisionGraphError(f"Duplicate node id '{node_id}'")
        kind = raw.get("type")
        variables = _variables(node_id, raw.get("variables"))

        if kind == "fetch":
            targets = raw.get("targets")
            if not isinstance(targets, list):
                raise DecisionGraphError(f"Node '{node_id}': 'targets' must be a list")
            node = FetchNode(
                node_id,
                tuple(_fetch_target(node_id, target) for target in targets),
                variables,
            )
        elif kind == "choice":
            options = raw.get("options")
            if not isinstance(options, list) or not options:
                raise DecisionGraphError(f"Node '{node_id}': 'options' must be a non-empty list")
            parsed = []
            for position, option in enumerate(options):
                if not isinstance(option, Mapping):
                    raise DecisionGraphError(f"Node '{node_id}': option {position} must be an object")
                label = _text(node_id, option, "label")
                target = option.get("node")
                if isinstance(target, Mapping):
                    target = self.add(f"{node_id}/{position}", target)
                elif not isinstance(target, str) or not target:
                    raise DecisionGraphError(
                        f"Node '{node_id}': option '{label}' needs a node id or inline node"
                    )
                parsed.append(ChoiceOption(label=label, target=target))
            node = ChoiceNode(node_id, _text(node_id, raw, "label"), tuple(parsed), variables)
        elif kind == "redirect":
            node = RedirectNode(node_id, _text(node_id, raw, "target"), variables)
        elif kind == "notice":
            next_id = raw.get("next")
            if next_id is not None and not isinstance(next_id, str):
                raise DecisionGraphError(f"Node '{node_id}': 'next' must be a node id")
            node = NoticeNode(node_id, _text(node_id, raw, "message"), next_id, variables)
        else:
            raise DecisionGraphError(f"Node '{node_id}': unknown node type {kind!r}")

        self.nodes[node_id] = node
        return node_id


def _references(node: DecisionNode) -> list[str]:
    if isinstance(node, ChoiceNode):
        return [option.target for option in node.options]
    if isinstance(node, RedirectNode):
        return [node.target]
    if isinstance(node, NoticeNode) and node.next:
        return [node.next]
    return []


def parse_graph(document: Any) -> GraphDocument:
    """Validate a graph document and build typed nodes.

    Raises:
        DecisionGraphError: Unknown node types, missing fields, dangling references
    """
    if not isinstance(document, Mapping):
        raise DecisionGraphError("Decision graph must be an object")
    raw_nodes = document.get("nodes")
    if not isinstance(raw_nodes, Mapping) or not raw_nodes:
        raise DecisionGraphError("Decision graph has no nodes")

    parser = _Parser()
    for node_id, raw in raw_nodes.items():
        parser.add(str(node_id), raw)

    root = document.get("root")
    if root not in parser.nodes:
        raise DecisionGraphError(f"Decision graph root {root!r} is not a node")
    for node in parser.nodes.values():
        for reference in _references(node):
            if reference not in parser.nodes:
                raise DecisionGraphError(
                    f"Node '{node.node_id}' refers to unknown node '{reference}'"
                )
    return GraphDocument(root=root, nodes=parser.nodes)

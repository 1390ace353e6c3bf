"""
Typed workflow graph.

Nodes are allocated from a single arena so every node ID in a graph comes
from the same counter, and inputs reference other nodes through ``NodeRef``
values instead of raw ``[id, slot]`` lists. ``to_api_payload`` renders the
graph in the execution service's API format.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class NodeKind(str, Enum):
    CHECKPOINT_LOADER = "CheckpointLoaderSimple"
    UNET_LOADER = "UNETLoader"
    CLIP_LOADER = "CLIPLoader"
    VAE_LOADER = "VAELoader"
    CLIP_TEXT_ENCODE = "CLIPTextEncode"
    EMPTY_LATENT_IMAGE = "EmptyLatentImage"
    KSAMPLER = "KSampler"
    VAE_DECODE = "VAEDecode"
    SAVE_IMAGE = "SaveImage"
    LORA_LOADER = "LoraLoader"
    LOAD_IMAGE = "LoadImage"
    CLIP_VISION_LOADER = "CLIPVisionLoader"
    CLIP_VISION_ENCODE = "CLIPVisionEncode"
    IMAGE_ADAPTER_LOADER = "IPAdapterModelLoader"
    IMAGE_ADAPTER_APPLY = "IPAdapterApply"
    CONTROLNET_LOADER = "ControlNetLoader"
    CONTROLNET_APPLY = "ControlNetApply"


@dataclass(frozen=True)
class NodeRef:
    """Output ``slot`` of node ``node_id``."""

    node_id: str
    slot: int = 0

    def to_api(self) -> list[Any]:
        return [self.node_id, self.slot]


@dataclass
class WorkflowNode:
    kind: NodeKind
    inputs: dict[str, Any] = field(default_factory=dict)

    def references(self) -> Iterator[NodeRef]:
        for value in self.inputs.values():
            if isinstance(value, NodeRef):
                yield value


class WorkflowGraph:
    """Arena of workflow nodes keyed by sequentially allocated IDs."""

    def __init__(self) -> None:
        self._nodes: dict[str, WorkflowNode] = {}
        self._next_id = 1

    def add(self, kind: NodeKind, inputs: dict[str, Any]) -> str:
        node_id = str(self._next_id)
        self._next_id += 1
        for value in inputs.values():
            if isinstance(value, NodeRef) and value.node_id not in self._nodes:
                raise ValueError(f"{kind.value} references unknown node {value.node_id}")
        self._nodes[node_id] = WorkflowNode(kind=kind, inputs=dict(inputs))
        return node_id

    def __getitem__(self, node_id: str) -> WorkflowNode:
        return self._nodes[node_id]

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[str]:
        return iter(self._nodes)

    def items(self) -> Iterator[tuple[str, WorkflowNode]]:
        return iter(self._nodes.items())

    def nodes_of_kind(self, kind: NodeKind) -> list[str]:
        return [node_id for node_id, node in self._nodes.items() if node.kind == kind]

    def validate(self) -> None:
        """Raise ``ValueError`` unless the graph is a closed DAG."""
        for node_id, node in self._nodes.items():
            for ref in node.references():
                if ref.node_id not in self._nodes:
                    raise ValueError(f"node {node_id} references unknown node {ref.node_id}")

        visiting: set[str] = set()
        done: set[str] = set()

        def visit(node_id: str) -> None:
            if node_id in done:
                return
            if node_id in visiting:
                raise ValueError(f"cycle detected at node {node_id}")
            visiting.add(node_id)
            for ref in self._nodes[node_id].references():
                visit(ref.node_id)
            visiting.discard(node_id)
            done.add(node_id)

        for node_id in self._nodes:
            visit(node_id)

    def to_api_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for node_id, node in self._nodes.items():
            inputs = {
                name: value.to_api() if isinstance(value, NodeRef) else value
                for name, value in node.inputs.items()
            }
            payload[node_id] = {"class_type": node.kind.value, "inputs": inputs}
        return payload

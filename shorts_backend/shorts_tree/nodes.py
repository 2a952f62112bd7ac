"""
Per-node behavior: prompt placeholder resolution, output parsing and the
status state machine.

Placeholders understood in prompt templates, applied in this order:

    {parent}      parent output at the node's parent_output_index
    {parent[N]}   parent output element N (empty string if absent)
    {sceneNum}    parent_output_index + 1
    {root}        the run's initial input text
    {input}, {parent[i]}   legacy aliases of {parent}

Each pass only scans template text; values inserted by an earlier pass are
never matched again.
"""
import logging
import re
from typing import Callable, List, Optional, Sequence, Tuple, Union

from .errors import StateTransitionError
from .models import Node, NodeStatus, StageKind

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS = {
    NodeStatus.PENDING: (NodeStatus.RUNNING,),
    NodeStatus.RUNNING: (NodeStatus.COMPLETED, NodeStatus.FAILED),
    NodeStatus.COMPLETED: (),
    NodeStatus.FAILED: (),
}

_INDEXED_PARENT = re.compile(r"\{parent\[(\d+)\]\}")

# (text, is_template_text)
Segment = Tuple[str, bool]


def parent_slot_value(parent_output: Sequence[str], index: int) -> str:
    if 0 <= index < len(parent_output):
        return parent_output[index]
    if parent_output:
        return parent_output[0]
    return ""


def _substitute(segments: List[Segment], pattern: Union[str, "re.Pattern[str]"],
                replacement: Callable[["re.Match[str]"], str]) -> List[Segment]:
    if isinstance(pattern, str):
        pattern = re.compile(re.escape(pattern))
    result: List[Segment] = []
    for text, is_template in segments:
        if not is_template:
            result.append((text, False))
            continue
        pos = 0
        for match in pattern.finditer(text):
            if match.start() > pos:
                result.append((text[pos:match.start()], True))
            result.append((replacement(match), False))
            pos = match.end()
        if pos < len(text):
            result.append((text[pos:], True))
    return result


def resolve_prompt(template: str, parent_output: Sequence[str], parent_output_index: int = 0,
                   root_input: Optional[str] = None) -> str:
    value = parent_slot_value(parent_output, parent_output_index)

    def indexed(match):
        i = int(match.group(1))
        return parent_output[i] if i < len(parent_output) else ""

    segments: List[Segment] = [(template, True)]
    segments = _substitute(segments, "{parent}", lambda m: value)
    segments = _substitute(segments, _INDEXED_PARENT, indexed)
    segments = _substitute(segments, "{sceneNum}", lambda m: str(parent_output_index + 1))
    segments = _substitute(segments, "{root}", lambda m: root_input or "")
    segments = _substitute(segments, "{input}", lambda m: value)
    segments = _substitute(segments, "{parent[i]}", lambda m: value)
    return "".join(text for text, _ in segments)


def split_output(raw: str, separator: Optional[str]) -> List[str]:
    if not separator:
        return [raw.strip()]
    return [piece.strip() for piece in raw.split(separator) if piece.strip()]


def parse_output(node: Node, raw: str) -> List[str]:
    """Turn a provider's raw result into the node's output array."""
    if node.kind in (StageKind.IMAGE, StageKind.SPEECH):
        return [raw]
    parts = split_output(raw, node.output_separator)
    if not parts:
        logger.warning(f"Node {node.id} produced no non-empty output pieces")
    return parts


def transition(node: Node, target: NodeStatus) -> None:
    if target not in _ALLOWED_TRANSITIONS[node.status]:
        raise StateTransitionError(
            f"Node {node.id} cannot move from {node.status.value} to {target.value}",
            details={"node_id": node.id, "from": node.status.value, "to": target.value},
        )
    node.status = target


def mark_running(node: Node, resolved_input: str) -> None:
    transition(node, NodeStatus.RUNNING)
    node.input = resolved_input


def mark_completed(node: Node, raw: str, parsed: List[str]) -> None:
    transition(node, NodeStatus.COMPLETED)
    node.output = raw
    node.output_array = parsed


def mark_failed(node: Node, message: str) -> None:
    transition(node, NodeStatus.FAILED)
    node.error = message

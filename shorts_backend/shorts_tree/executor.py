"""
Tree execution engine.

A run is described by an ExecutionContext holding the node graph, the
providers and the artifact store. Every function here takes the context
explicitly; nothing is shared between runs.

Execution is recursive fan-out: a node runs, and if it completes its
children are started together with ``asyncio.gather(return_exceptions=True)``
so a failing branch never cancels its siblings. A failed node's children are
never scheduled.
"""
import asyncio
import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

from pydantic import ValidationError as PydanticValidationError

from .errors import ExpansionError, StateTransitionError, ValidationError
from .models import (
    ImageParams,
    Node,
    NodeArtifact,
    NodeConfig,
    NodeStatus,
    SceneTemplates,
    SpeechParams,
    StageConfig,
    StageKind,
    TextParams,
    TreeTemplate,
)
from .nodes import mark_completed, mark_failed, mark_running, parse_output, resolve_prompt
from .providers import Providers
from .storage import ArtifactStore

logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 150
# Root expanded by the template-level dynamic_children flag
DYNAMIC_ROOT_ID = "root"


@dataclass
class ExecutionGraph:
    execution_id: str
    nodes: Dict[str, Node] = field(default_factory=dict)
    root_ids: List[str] = field(default_factory=list)
    initial_input: str = ""
    scene_templates: Optional[SceneTemplates] = None
    dynamic_root_ids: Set[str] = field(default_factory=set)
    expanded_root_ids: Set[str] = field(default_factory=set)


@dataclass
class ExecutionContext:
    graph: ExecutionGraph
    providers: Providers
    store: ArtifactStore
    started: bool = False
    finished: bool = False


def new_execution_id() -> str:
    return f"exec_{uuid.uuid4().hex}"


def estimate_speech_duration(text: str) -> int:
    """Rough spoken length in seconds at 150 words per minute."""
    words = len(text.split())
    return math.ceil(words * 60 / WORDS_PER_MINUTE)


# --- template loading ---

def parse_template(raw: Any) -> TreeTemplate:
    if isinstance(raw, TreeTemplate):
        return raw
    try:
        return TreeTemplate.model_validate(raw)
    except PydanticValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first["loc"])
        raise ValidationError(f"Invalid tree template at {loc}: {first['msg']}", field=loc) from e


def _check_acyclic(configs: Dict[str, NodeConfig]) -> None:
    for start in configs:
        seen = {start}
        current = configs[start].parent_id
        while current is not None:
            if current in seen:
                raise ValidationError(f"Cyclic parent reference involving node {start}", node_id=start, field="parent_id")
            seen.add(current)
            current = configs[current].parent_id


def _check_scene_templates(templates: Optional[SceneTemplates]) -> SceneTemplates:
    if templates is None:
        raise ValidationError("Dynamic expansion requires node_templates", field="node_templates")
    expected = {"planning": StageKind.TEXT, "image": StageKind.IMAGE, "audio": StageKind.SPEECH}
    for slot, kind in expected.items():
        actual = getattr(templates, slot).kind
        if actual != kind:
            raise ValidationError(
                f"node_templates.{slot} must be a {kind.value} stage, got {actual.value}",
                field=f"node_templates.{slot}",
            )
    return templates


def load_tree(template: Any, initial_input: str = "", execution_id: Optional[str] = None) -> ExecutionGraph:
    """Validate a template and build the static part of the graph."""
    template = parse_template(template)
    graph = ExecutionGraph(execution_id=execution_id or new_execution_id(), initial_input=initial_input or "")

    configs: Dict[str, NodeConfig] = {}
    for cfg in template.nodes:
        if cfg.id in configs:
            raise ValidationError(f"Duplicate node id {cfg.id}", node_id=cfg.id, field="id")
        configs[cfg.id] = cfg
    for cfg in template.nodes:
        if cfg.parent_id is not None and cfg.parent_id not in configs:
            raise ValidationError(
                f"Node {cfg.id} references unknown parent {cfg.parent_id}", node_id=cfg.id, field="parent_id"
            )
        if cfg.dynamic and cfg.parent_id is not None:
            raise ValidationError(f"Only root nodes can be dynamic, {cfg.id} has a parent", node_id=cfg.id, field="dynamic")
    _check_acyclic(configs)

    for cfg in template.nodes:
        node = Node(**cfg.model_dump(exclude={"dynamic"}))
        if node.name is None:
            node.name = f"Node {node.id}"
        graph.nodes[node.id] = node
    for cfg in template.nodes:
        if cfg.parent_id is None:
            graph.root_ids.append(cfg.id)
            if cfg.dynamic or (template.dynamic_children and cfg.id == DYNAMIC_ROOT_ID):
                graph.dynamic_root_ids.add(cfg.id)
        else:
            graph.nodes[cfg.parent_id].children.append(cfg.id)

    if graph.dynamic_root_ids:
        if len(graph.dynamic_root_ids) > 1:
            raise ValidationError(
                f"At most one dynamic root is supported, got {sorted(graph.dynamic_root_ids)}", field="dynamic"
            )
        graph.scene_templates = _check_scene_templates(template.node_templates)

    logger.info(
        f"Loaded tree for {graph.execution_id}: {len(graph.nodes)} nodes, "
        f"{len(graph.root_ids)} roots, dynamic={sorted(graph.dynamic_root_ids)}"
    )
    return graph


# --- dynamic expansion ---

def _node_from_stage(stage: StageConfig, node_id: str, name: str, parent_id: str, index: int) -> Node:
    data = stage.model_dump()
    data.update(id=node_id, name=name, parent_id=parent_id, parent_output_index=index)
    return Node(**data)


def expand_scenes(graph: ExecutionGraph, root: Node) -> List[Node]:
    """Create planning/image/audio nodes for every scene in the root's output."""
    if root.id in graph.expanded_root_ids:
        raise ExpansionError(f"Root {root.id} has already been expanded", details={"node_id": root.id})
    if root.status != NodeStatus.COMPLETED:
        raise StateTransitionError(f"Root {root.id} must be completed before expansion")
    templates = graph.scene_templates
    if templates is None:
        raise ValidationError(f"No scene templates configured for root {root.id}", node_id=root.id)

    created: List[Node] = []
    root_children: List[str] = []
    for i in range(len(root.output_array)):
        n = i + 1
        planning = _node_from_stage(templates.planning, f"scene{n}_planning",
                                    f"Scene {n} caption & image prompt", root.id, i)
        image = _node_from_stage(templates.image, f"scene{n}_image", f"Scene {n} image", planning.id, 1)
        audio = _node_from_stage(templates.audio, f"scene{n}_audio", f"Scene {n} narration", root.id, i)
        planning.children.append(image.id)
        root_children.extend([planning.id, audio.id])
        created.extend([planning, image, audio])

    for node in created:
        if node.id in graph.nodes:
            raise ValidationError(f"Expanded node id {node.id} already exists", node_id=node.id)
    for node in created:
        graph.nodes[node.id] = node
    root.children.extend(root_children)
    graph.expanded_root_ids.add(root.id)
    logger.info(f"Expanded {root.id}: {len(root.output_array)} scenes, {len(created)} nodes")
    return created


# --- execution ---

async def _invoke(ctx: ExecutionContext, node: Node) -> str:
    params = node.params
    prompt = node.input or ""
    execution_id = ctx.graph.execution_id

    if isinstance(params, TextParams):
        return await ctx.providers.text(params.model, node.system_message or None, prompt,
                                        params.temperature, params.max_tokens)

    if isinstance(params, ImageParams):
        image = await ctx.providers.image(params.model, prompt, params.size, params.quality, params.style)
        url = image.url
        node.artifact = NodeArtifact(remote_url=url, revised_prompt=image.revised_prompt)
        try:
            filename = ctx.store.generate_filename(execution_id, node.id, "png")
            node.artifact.local_path = await ctx.store.save_image_from_url(url, filename)
        except Exception as e:
            logger.warning(f"Could not persist image for {node.id}, keeping remote URL: {e}")
            return url
        return node.artifact.local_path

    if isinstance(params, SpeechParams):
        audio = await ctx.providers.speech(params.model, prompt, params.voice, params.speed, params.format)
        filename = ctx.store.generate_filename(execution_id, node.id, params.format)
        path = ctx.store.save_audio(audio, filename)
        node.artifact = NodeArtifact(local_path=path, estimated_duration=estimate_speech_duration(prompt))
        return path

    raise ValidationError(f"Unknown stage kind for node {node.id}", node_id=node.id)


async def execute_node(ctx: ExecutionContext, node: Node, parent_output: Sequence[str]) -> None:
    if node.status != NodeStatus.PENDING:
        raise StateTransitionError(f"Node {node.id} already ran ({node.status.value})")

    logger.info(f"Running node {node.name} ({node.id})")
    try:
        resolved = resolve_prompt(node.prompt_template, parent_output, node.parent_output_index,
                                  ctx.graph.initial_input)
        mark_running(node, resolved)
        raw = await _invoke(ctx, node)
        parsed = parse_output(node, raw)
    except Exception as e:
        if node.status == NodeStatus.PENDING:
            mark_running(node, node.input or "")
        mark_failed(node, str(e))
        logger.error(f"Node {node.id} failed: {e}")
        return

    mark_completed(node, raw, parsed)
    logger.info(f"Node {node.id} completed with {len(parsed)} outputs")

    if node.id in ctx.graph.dynamic_root_ids:
        try:
            expand_scenes(ctx.graph, node)
        except (ExpansionError, ValidationError) as e:
            logger.error(f"Dynamic expansion of {node.id} rejected: {e}")

    children = [ctx.graph.nodes[cid] for cid in node.children]
    if not children:
        return
    logger.info(f"Node {node.id} starting {len(children)} children")
    results = await asyncio.gather(
        *(execute_node(ctx, child, node.output_array) for child in children),
        return_exceptions=True,
    )
    for child, result in zip(children, results):
        if isinstance(result, BaseException):
            logger.error(f"Child {child.id} of {node.id} raised: {result}")


async def run_tree(ctx: ExecutionContext) -> Dict[str, Any]:
    """Execute every root and wait until all branches have settled."""
    if ctx.started:
        raise StateTransitionError(f"Execution {ctx.graph.execution_id} has already been started")
    ctx.started = True
    graph = ctx.graph
    logger.info(f"Starting execution {graph.execution_id} with {len(graph.root_ids)} roots")
    roots = [graph.nodes[rid] for rid in graph.root_ids]
    try:
        results = await asyncio.gather(
            *(execute_node(ctx, root, [graph.initial_input]) for root in roots),
            return_exceptions=True,
        )
        for root, result in zip(roots, results):
            if isinstance(result, BaseException):
                logger.error(f"Root {root.id} raised: {result}")
    finally:
        ctx.finished = True
    logger.info(f"Execution {graph.execution_id} finished")
    return get_results(graph)


# --- results ---

def _node_result(node: Node) -> Dict[str, Any]:
    return node.model_dump(mode="json")


def _tree_result(graph: ExecutionGraph, node: Node) -> Dict[str, Any]:
    data = _node_result(node)
    data["children"] = [_tree_result(graph, graph.nodes[cid]) for cid in node.children]
    return data


def get_results(graph: ExecutionGraph) -> Dict[str, Any]:
    return {
        "nodes": [_node_result(node) for node in graph.nodes.values()],
        "tree": [_tree_result(graph, graph.nodes[rid]) for rid in graph.root_ids],
    }

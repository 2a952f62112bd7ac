import logging
from typing import Optional

from langchain_core.runnables import RunnableConfig
from langgraph.graph import StateGraph, END

from .media import collect_scenes, compose_video
from .models import PipelineState, TreeTemplate
from .prompts import default_tree_template
from .providers import Providers
from .registry import ExecutionRegistry, registry as default_registry

logger = logging.getLogger(__name__)

def _registry(config: RunnableConfig) -> ExecutionRegistry:
    return (config.get("configurable") or {}).get("registry") or default_registry

async def node_tree(state: PipelineState, config: RunnableConfig) -> dict:
    reg = _registry(config)
    providers = (config.get("configurable") or {}).get("providers")
    execution_id = reg.submit(state.initial_text, state.template, providers)
    logger.info(f"Running tree for execution {execution_id}")
    results = await reg.wait(execution_id)
    return {"execution_id": execution_id, "results": results}

async def node_scenes(state: PipelineState, config: RunnableConfig) -> dict:
    reg = _registry(config)
    scenes = collect_scenes(reg.get(state.execution_id).context.graph.nodes)
    logger.info(f"Execution {state.execution_id} produced {len(scenes)} usable scenes")
    return {"scenes": scenes}

async def node_render(state: PipelineState, config: RunnableConfig) -> dict:
    reg = _registry(config)
    logger.info(f"Starting video rendering for execution {state.execution_id}")
    final_path = await compose_video(state.scenes, state.execution_id, reg.store.videos_dir)
    logger.info(f"Final video created: {final_path}")
    return {"final_path": final_path}

def build_graph():
    g = StateGraph(PipelineState)
    g.add_node("tree", node_tree)
    g.add_node("scenes", node_scenes)
    g.add_node("render", node_render)
    g.set_entry_point("tree")
    g.add_edge("tree", "scenes")
    g.add_edge("scenes", "render")
    g.add_edge("render", END)
    return g.compile()

GRAPH = build_graph()

async def run_pipeline(initial_text: str, template: Optional[TreeTemplate] = None,
                       providers: Optional[Providers] = None,
                       registry: Optional[ExecutionRegistry] = None) -> PipelineState:
    """Generate the tree, collect scenes and compose the final video in one call."""
    state = PipelineState(initial_text=initial_text, template=template or default_tree_template())
    config = {"configurable": {"providers": providers, "registry": registry or default_registry}}
    try:
        final_state = await GRAPH.ainvoke(state, config=config)
    except Exception as e:
        logger.error(f"Pipeline failed: {str(e)}")
        raise
    # LangGraph hands back the channel values as a dict
    if isinstance(final_state, PipelineState):
        return final_state
    return PipelineState(**final_state)

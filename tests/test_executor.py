"""Tests for tree loading, dynamic scene expansion and concurrent execution."""

import re

import pytest

from shorts_tree.errors import ExpansionError, StateTransitionError, ValidationError
from shorts_tree.executor import (
    estimate_speech_duration,
    execute_node,
    expand_scenes,
    get_results,
    load_tree,
    run_tree,
)
from shorts_tree.models import NodeStatus

from conftest import FakeProviders, FakeStore, dynamic_template, static_template

PLACEHOLDER = re.compile(r"\{(parent(\[\w+\])?|root|sceneNum|input)\}")


def ideas_responder(prompt, system_message):
    if prompt.startswith("IDEAS"):
        return "alpha---beta---gamma"
    return f"expanded {prompt}"


# ---------------------------------------------------------------------------
# Template validation
# ---------------------------------------------------------------------------

class TestLoadTree:
    def test_static_tree_structure(self):
        graph = load_tree(static_template(), "cats")
        assert graph.root_ids == ["root"]
        assert graph.nodes["root"].children == ["child1", "child2", "child3"]
        assert graph.nodes["child1"].name == "Node child1"
        assert graph.execution_id.startswith("exec_")
        assert not graph.dynamic_root_ids

    def test_all_nodes_start_pending(self):
        graph = load_tree(dynamic_template(), "text")
        assert all(n.status == NodeStatus.PENDING for n in graph.nodes.values())
        assert graph.dynamic_root_ids == {"root"}

    def test_dynamic_children_flag_marks_roots(self):
        template = dynamic_template()
        template["nodes"][0]["dynamic"] = False
        template["dynamic_children"] = True
        assert load_tree(template).dynamic_root_ids == {"root"}

    def test_accepts_parsed_template(self):
        from shorts_tree.prompts import default_tree_template

        graph = load_tree(default_tree_template(), "text")
        assert graph.root_ids == ["root"]

    @pytest.mark.parametrize(
        "template",
        [
            {"nodes": []},
            {"nodes": [{"id": ""}]},
            {"nodes": [{"id": "a", "params": {"kind": "video"}}]},
            {"nodes": [{"id": "a", "parent_output_index": -1}]},
            {"nodes": [{"id": "a"}, {"id": "a"}]},
            {"nodes": [{"id": "a", "parent_id": "ghost"}]},
            {"nodes": [{"id": "a", "parent_id": "b"}, {"id": "b", "parent_id": "a"}]},
            {"nodes": [{"id": "a"}, {"id": "b", "parent_id": "a", "dynamic": True}]},
        ],
        ids=["empty", "blank-id", "unknown-kind", "negative-index", "duplicate",
             "unknown-parent", "cycle", "dynamic-child"],
    )
    def test_invalid_templates_rejected(self, template):
        with pytest.raises(ValidationError):
            load_tree(template)

    def test_dynamic_root_requires_node_templates(self):
        template = dynamic_template()
        del template["node_templates"]
        with pytest.raises(ValidationError) as exc:
            load_tree(template)
        assert exc.value.details["field"] == "node_templates"

    def test_node_template_kinds_are_checked(self):
        template = dynamic_template()
        template["node_templates"]["image"] = {"prompt_template": "{parent}"}
        with pytest.raises(ValidationError):
            load_tree(template)

    def test_single_dynamic_root_only(self):
        template = dynamic_template()
        template["nodes"].append({"id": "other", "dynamic": True})
        with pytest.raises(ValidationError):
            load_tree(template)

    def test_dynamic_children_flag_only_expands_root_node(self):
        template = dynamic_template(dynamic_children=True)
        template["nodes"][0]["dynamic"] = False
        template["nodes"].append({"id": "other"})

        graph = load_tree(template)

        assert graph.root_ids == ["root", "other"]
        assert graph.dynamic_root_ids == {"root"}


# ---------------------------------------------------------------------------
# Static trees
# ---------------------------------------------------------------------------

class TestStaticExecution:
    async def test_three_children_receive_their_slot(self, make_context):
        fakes = FakeProviders(responder=ideas_responder)
        ctx = make_context(static_template(), "cats", fakes)

        results = await run_tree(ctx)

        nodes = ctx.graph.nodes
        assert nodes["root"].input == "IDEAS cats"
        assert nodes["root"].output_array == ["alpha", "beta", "gamma"]
        assert nodes["child1"].input == "More on alpha"
        assert nodes["child2"].input == "More on beta"
        assert nodes["child3"].input == "More on gamma"
        assert all(n.status == NodeStatus.COMPLETED for n in nodes.values())
        assert len(results["nodes"]) == 4
        assert [c["id"] for c in results["tree"][0]["children"]] == ["child1", "child2", "child3"]

    async def test_sibling_failure_is_isolated(self, make_context):
        fakes = FakeProviders(responder=ideas_responder, fail_text_on=["More on beta"])
        ctx = make_context(static_template(), "cats", fakes)

        await run_tree(ctx)

        nodes = ctx.graph.nodes
        assert nodes["child2"].status == NodeStatus.FAILED
        assert "exploded" in nodes["child2"].error
        assert nodes["child1"].status == NodeStatus.COMPLETED
        assert nodes["child3"].status == NodeStatus.COMPLETED

    async def test_out_of_range_slot_falls_back_to_first_output(self, make_context):
        fakes = FakeProviders(responder=lambda p, s: "only" if p.startswith("IDEAS") else p)
        ctx = make_context(static_template(), "cats", fakes)

        await run_tree(ctx)

        assert ctx.graph.nodes["child3"].input == "More on only"

    async def test_failed_parent_never_schedules_children(self, make_context):
        fakes = FakeProviders(fail_text_on=["IDEAS"])
        ctx = make_context(static_template(), "cats", fakes)

        await run_tree(ctx)

        nodes = ctx.graph.nodes
        assert nodes["root"].status == NodeStatus.FAILED
        for cid in ("child1", "child2", "child3"):
            assert nodes[cid].status == NodeStatus.PENDING
            assert nodes[cid].input is None
        assert len(fakes.calls) == 1
        assert ctx.finished

    async def test_execution_cannot_start_twice(self, make_context):
        ctx = make_context(static_template(), "cats", FakeProviders(responder=ideas_responder))
        await run_tree(ctx)
        with pytest.raises(StateTransitionError):
            await run_tree(ctx)

    async def test_node_runs_at_most_once(self, make_context):
        ctx = make_context(static_template(), "cats", FakeProviders(responder=ideas_responder))
        await run_tree(ctx)
        with pytest.raises(StateTransitionError):
            await execute_node(ctx, ctx.graph.nodes["child1"], ["again"])


# ---------------------------------------------------------------------------
# Dynamic expansion
# ---------------------------------------------------------------------------

class TestDynamicExecution:
    async def test_four_scenes_expand_to_twelve_nodes(self, make_context, providers):
        ctx = make_context(dynamic_template(), "Some article", providers)

        await run_tree(ctx)

        nodes = ctx.graph.nodes
        expected = {f"scene{n}_{kind}" for n in range(1, 5) for kind in ("planning", "image", "audio")}
        assert set(nodes) == expected | {"root"}
        assert nodes["root"].children == [
            "scene1_planning", "scene1_audio", "scene2_planning", "scene2_audio",
            "scene3_planning", "scene3_audio", "scene4_planning", "scene4_audio",
        ]
        for n in range(1, 5):
            planning = nodes[f"scene{n}_planning"]
            image = nodes[f"scene{n}_image"]
            audio = nodes[f"scene{n}_audio"]
            assert (planning.parent_id, planning.parent_output_index) == ("root", n - 1)
            assert (image.parent_id, image.parent_output_index) == (f"scene{n}_planning", 1)
            assert (audio.parent_id, audio.parent_output_index) == ("root", n - 1)
            assert planning.children == [image.id]
            assert planning.name == f"Scene {n} caption & image prompt"

    async def test_scene_stages_receive_the_right_inputs(self, make_context, providers):
        ctx = make_context(dynamic_template(), "Some article", providers)

        await run_tree(ctx)

        nodes = ctx.graph.nodes
        assert nodes["root"].input == "SCRIPT: Some article"
        assert nodes["scene2_planning"].input == "PLAN 2: Scene two text"
        assert nodes["scene2_planning"].output_array == ["Caption for Scene two text", "Image of Scene two text"]
        assert nodes["scene2_image"].input == "Image of Scene two text"
        assert nodes["scene2_audio"].input == "Scene two text"
        assert all(n.status == NodeStatus.COMPLETED for n in nodes.values())

    async def test_resolved_inputs_contain_no_placeholders(self, make_context, providers):
        ctx = make_context(dynamic_template(), "Some article", providers)
        await run_tree(ctx)
        for node in ctx.graph.nodes.values():
            assert not PLACEHOLDER.search(node.input), node.id

    async def test_children_start_after_parent_completes(self, make_context, providers):
        ctx = make_context(dynamic_template(), "Some article", providers)
        await run_tree(ctx)

        prompts = [p for _, p in providers.calls]
        assert prompts[0] == "SCRIPT: Some article"
        for n, body in enumerate(["Scene one text", "Scene two text"], start=1):
            assert prompts.index(f"PLAN {n}: {body}") < prompts.index(f"Image of {body}")

    async def test_artifacts_are_persisted(self, make_context, providers, store):
        ctx = make_context(dynamic_template(), "Some article", providers)
        await run_tree(ctx)

        image = ctx.graph.nodes["scene1_image"]
        assert image.artifact.remote_url.startswith("https://img.example/")
        assert image.output == image.artifact.local_path
        assert image.artifact.local_path.startswith(store.images_dir)
        assert image.artifact.revised_prompt == "revised: Image of Scene one text"

        audio = ctx.graph.nodes["scene1_audio"]
        assert audio.output.startswith(store.audio_dir)
        assert audio.output.endswith(".mp3")
        assert audio.artifact.estimated_duration == estimate_speech_duration("Scene one text")

    async def test_image_download_failure_keeps_remote_url(self, make_context, providers, tmp_path):
        offline = FakeStore(str(tmp_path / "offline"), fail_downloads=True)
        ctx = make_context(dynamic_template(), "Some article", providers, artifact_store=offline)

        await run_tree(ctx)

        image = ctx.graph.nodes["scene1_image"]
        assert image.status == NodeStatus.COMPLETED
        assert image.output == image.artifact.remote_url
        assert image.artifact.local_path is None

    async def test_audio_persistence_failure_fails_only_audio(self, make_context, providers, tmp_path):
        full_disk = FakeStore(str(tmp_path / "full"), fail_audio=True)
        ctx = make_context(dynamic_template(), "Some article", providers, artifact_store=full_disk)

        await run_tree(ctx)

        nodes = ctx.graph.nodes
        for n in range(1, 5):
            audio = nodes[f"scene{n}_audio"]
            assert audio.status == NodeStatus.FAILED
            assert "disk full" in audio.error
            assert nodes[f"scene{n}_planning"].status == NodeStatus.COMPLETED
            assert nodes[f"scene{n}_image"].status == NodeStatus.COMPLETED

    async def test_failed_planning_skips_image_but_not_audio(self, make_context):
        fakes = FakeProviders(fail_text_on=["PLAN 2:"])
        ctx = make_context(dynamic_template(), "Some article", fakes)

        await run_tree(ctx)

        nodes = ctx.graph.nodes
        assert nodes["scene2_planning"].status == NodeStatus.FAILED
        assert nodes["scene2_image"].status == NodeStatus.PENDING
        assert nodes["scene2_image"].input is None
        assert "Image of Scene two text" not in fakes.prompts("image")
        assert nodes["scene2_audio"].status == NodeStatus.COMPLETED
        assert "Scene two text" in fakes.prompts("speech")
        for n in (1, 3, 4):
            assert nodes[f"scene{n}_image"].status == NodeStatus.COMPLETED

    async def test_empty_script_expands_nothing(self, make_context):
        fakes = FakeProviders(responder=lambda p, s: "---\n---")
        ctx = make_context(dynamic_template(), "Some article", fakes)

        await run_tree(ctx)

        root = ctx.graph.nodes["root"]
        assert root.status == NodeStatus.COMPLETED
        assert root.output_array == []
        assert root.children == []
        assert len(ctx.graph.nodes) == 1

    async def test_failed_root_is_not_expanded(self, make_context):
        ctx = make_context(dynamic_template(), "Some article", FakeProviders(fail_text_on=["SCRIPT"]))
        await run_tree(ctx)
        assert list(ctx.graph.nodes) == ["root"]
        assert not ctx.graph.expanded_root_ids

    async def test_expansion_runs_once(self, make_context, providers):
        ctx = make_context(dynamic_template(), "Some article", providers)
        await run_tree(ctx)
        count = len(ctx.graph.nodes)

        with pytest.raises(ExpansionError):
            expand_scenes(ctx.graph, ctx.graph.nodes["root"])
        assert len(ctx.graph.nodes) == count

    def test_expansion_requires_completed_root(self):
        graph = load_tree(dynamic_template(), "Some article")
        with pytest.raises(StateTransitionError):
            expand_scenes(graph, graph.nodes["root"])

    async def test_id_collision_leaves_graph_untouched(self, make_context, providers):
        template = dynamic_template()
        template["nodes"].append({"id": "scene1_planning", "prompt_template": "static {input}"})
        ctx = make_context(template, "Some article", providers)

        await run_tree(ctx)

        assert "scene2_planning" not in ctx.graph.nodes
        assert ctx.graph.nodes["root"].children == []
        assert ctx.graph.nodes["scene1_planning"].input == "static Some article"


class TestResults:
    async def test_results_nest_children(self, make_context, providers):
        ctx = make_context(dynamic_template(), "Some article", providers)
        await run_tree(ctx)

        results = get_results(ctx.graph)
        root = results["tree"][0]
        planning = root["children"][0]
        assert planning["id"] == "scene1_planning"
        assert planning["children"][0]["id"] == "scene1_image"
        assert planning["status"] == "completed"
        assert len(results["nodes"]) == 13


def test_speech_duration_estimate():
    assert estimate_speech_duration(" ".join(["word"] * 300)) == 120
    assert estimate_speech_duration("") == 0
    assert estimate_speech_duration("one two three") == 2

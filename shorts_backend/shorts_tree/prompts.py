from .models import ImageParams, NodeConfig, SceneTemplates, SpeechParams, StageConfig, TextParams, TreeTemplate

SCENE_SEPARATOR = "---"
IMAGE_SEPARATOR = "===IMAGE==="

SCRIPT_SYSTEM_PROMPT = """You are a short-form video scriptwriter. You turn source text into a tight,
engaging vertical video script for YouTube Shorts, TikTok or Reels.
- Each scene is one or two spoken sentences, readable in about five seconds.
- Keep the facts of the source; do not invent claims.
- Plain spoken language, no stage directions, no scene labels."""

SCRIPT_PROMPT_TEMPLATE = f"""Split the following text into 3 to 6 scenes for a vertical short video.
Write only the narration for each scene and separate scenes with a line containing only "{SCENE_SEPARATOR}".

Text:
{{root}}"""

PLANNING_SYSTEM_PROMPT = """You plan one scene of a vertical short video. You write an on-screen caption
and a detailed prompt for an image model that illustrates the scene."""

PLANNING_PROMPT_TEMPLATE = f"""Scene {{sceneNum}} narration:
{{parent}}

Reply in exactly this format:
<caption: at most 12 words summarizing the narration>
{IMAGE_SEPARATOR}
<image prompt in English: concrete subject, setting, lighting and mood, 9:16 portrait composition, no text in the image>"""


def default_tree_template() -> TreeTemplate:
    """Script -> per-scene caption/image prompt -> image, with narration per scene."""
    return TreeTemplate(
        nodes=[
            NodeConfig(
                id="root",
                name="Shorts script",
                params=TextParams(),
                system_message=SCRIPT_SYSTEM_PROMPT,
                prompt_template=SCRIPT_PROMPT_TEMPLATE,
                output_separator=SCENE_SEPARATOR,
                dynamic=True,
            )
        ],
        node_templates=SceneTemplates(
            planning=StageConfig(
                params=TextParams(),
                system_message=PLANNING_SYSTEM_PROMPT,
                prompt_template=PLANNING_PROMPT_TEMPLATE,
                output_separator=IMAGE_SEPARATOR,
            ),
            image=StageConfig(params=ImageParams(), prompt_template="{parent}"),
            audio=StageConfig(params=SpeechParams(), prompt_template="{parent}"),
        ),
    )


def example_tree_template() -> TreeTemplate:
    """Static three-child tree: one idea generator feeding three elaborations."""
    ideas = NodeConfig(
        id="root",
        name="Idea generation",
        system_message="You are a creative idea generator.",
        prompt_template=f'Come up with 3 creative ideas about {{input}}. Separate the ideas with "{SCENE_SEPARATOR}".',
        output_separator=SCENE_SEPARATOR,
    )
    children = [
        NodeConfig(
            id=f"child{i + 1}",
            name=f"Elaborate idea {i + 1}",
            system_message="You turn rough ideas into concrete plans.",
            prompt_template="Develop this idea in more detail: {parent}",
            parent_id="root",
            parent_output_index=i,
        )
        for i in range(3)
    ]
    return TreeTemplate(nodes=[ideas] + children)

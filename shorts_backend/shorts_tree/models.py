from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class StageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    SPEECH = "speech"


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# --- generation parameters, tagged by stage kind ---

class TextParams(BaseModel):
    kind: Literal["text"] = "text"
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 2000


class ImageParams(BaseModel):
    kind: Literal["image"] = "image"
    model: str = "dall-e-3"
    size: str = "1024x1792"  # 9:16 portrait
    quality: str = "standard"
    style: Optional[str] = "vivid"


class SpeechParams(BaseModel):
    kind: Literal["speech"] = "speech"
    model: str = "tts-1"
    voice: str = "alloy"
    speed: float = Field(default=1.0, ge=0.25, le=4.0)
    format: str = "mp3"


GenerationParams = Annotated[Union[TextParams, ImageParams, SpeechParams], Field(discriminator="kind")]


class StageConfig(BaseModel):
    """Fields shared by template entries and live nodes."""
    name: Optional[str] = None
    params: GenerationParams = Field(default_factory=TextParams)
    prompt_template: str = "{input}"
    system_message: str = ""
    output_separator: Optional[str] = None

    @property
    def kind(self) -> StageKind:
        return StageKind(self.params.kind)


class NodeConfig(StageConfig):
    id: str = Field(min_length=1)
    parent_id: Optional[str] = None
    parent_output_index: int = Field(default=0, ge=0)
    # Expand scene children from this root's output once it completes
    dynamic: bool = False


class SceneTemplates(BaseModel):
    planning: StageConfig
    image: StageConfig
    audio: StageConfig


class TreeTemplate(BaseModel):
    nodes: List[NodeConfig] = Field(min_length=1)
    # Shorthand for dynamic=True on the root whose id is "root"
    dynamic_children: bool = False
    node_templates: Optional[SceneTemplates] = None


class GeneratedImage(BaseModel):
    url: str
    # Prompt as rewritten by the image model, when it reports one
    revised_prompt: Optional[str] = None


class NodeArtifact(BaseModel):
    remote_url: Optional[str] = None
    revised_prompt: Optional[str] = None
    local_path: Optional[str] = None
    estimated_duration: Optional[int] = None


class Node(StageConfig):
    id: str
    parent_id: Optional[str] = None
    parent_output_index: int = 0
    status: NodeStatus = NodeStatus.PENDING
    input: Optional[str] = None
    output: Optional[str] = None
    output_array: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    children: List[str] = Field(default_factory=list)
    artifact: Optional[NodeArtifact] = None

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


class Scene(BaseModel):
    image_path: Optional[str] = None
    audio_path: Optional[str] = None
    caption: str = ""
    duration: int = 5


class ExecuteRequest(BaseModel):
    # Validated by the engine so template errors surface as ValidationError
    tree_config: Dict[str, Any]
    initial_input: str = ""


class ComposeRequest(BaseModel):
    execution_id: str
    scenes: Optional[List[Scene]] = None


class CleanupRequest(BaseModel):
    max_age_hours: int = Field(default=24, ge=0)


class PipelineState(BaseModel):
    initial_text: str
    template: TreeTemplate
    execution_id: Optional[str] = None
    results: Optional[Dict[str, Any]] = None
    scenes: List[Scene] = Field(default_factory=list)
    final_path: Optional[str] = None

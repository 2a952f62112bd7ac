import os, asyncio, subprocess, logging, time, textwrap
from typing import Dict, List, Optional
from .errors import CompositionError
from .models import Node, NodeStatus, Scene
from .settings import VIDEO_WIDTH, VIDEO_HEIGHT, FPS, CAPTION_FONT_FILE, CAPTION_FONT_SIZE, CAPTION_LINE_CHARS
from .storage import write_text

logger = logging.getLogger(__name__)

DEFAULT_SCENE_SECONDS = 5
MIN_SCENE_SECONDS = 3

def scene_duration(audio_duration: Optional[int]) -> int:
    if audio_duration is None:
        return DEFAULT_SCENE_SECONDS
    return max(MIN_SCENE_SECONDS, audio_duration)

def _first_output(node: Optional[Node]) -> Optional[str]:
    if node is None or node.status != NodeStatus.COMPLETED or not node.output_array:
        return None
    return node.output_array[0]

def collect_scenes(nodes: Dict[str, Node]) -> List[Scene]:
    """Zip scene{n}_planning / _image / _audio outputs into ordered scenes."""
    scenes = []
    n = 1
    while f"scene{n}_planning" in nodes:
        planning = nodes[f"scene{n}_planning"]
        image = nodes.get(f"scene{n}_image")
        audio = nodes.get(f"scene{n}_audio")
        image_ref = _first_output(image)
        if planning.status != NodeStatus.COMPLETED or image_ref is None:
            logger.warning(f"Skipping scene {n}: planning={planning.status.value}, "
                           f"image={image.status.value if image else 'missing'}")
            n += 1
            continue
        audio_ref = _first_output(audio)
        audio_duration = None
        if audio_ref is not None and audio.artifact is not None:
            audio_duration = audio.artifact.estimated_duration
        caption = planning.output_array[0].strip() if planning.output_array else ""
        scenes.append(Scene(
            image_path=image_ref,
            audio_path=audio_ref,
            caption=caption,
            duration=scene_duration(audio_duration),
        ))
        n += 1
    logger.info(f"Collected {len(scenes)} usable scenes")
    return scenes

def _usable(ref: Optional[str]) -> bool:
    if not ref:
        return False
    return ref.startswith(("http://", "https://")) or os.path.exists(ref)

def _quote(path: str) -> str:
    # Single-quoted value for filter options and concat lists
    return "'" + path.replace("'", r"'\''") + "'"

def wrap_caption(caption: str, width: int = CAPTION_LINE_CHARS) -> str:
    return "\n".join(textwrap.wrap(caption.strip(), width=width, break_long_words=True))

def build_scene_command(scene: Scene, out_path: str, caption_path: Optional[str] = None,
                        w=VIDEO_WIDTH, h=VIDEO_HEIGHT, fps=FPS) -> List[str]:
    d = max(1, int(scene.duration))
    cmd = ["ffmpeg", "-y"]
    if _usable(scene.image_path):
        cmd += ["-loop", "1", "-t", str(d), "-i", scene.image_path]
    else:
        cmd += ["-f", "lavfi", "-t", str(d), "-i", f"color=c=black:s={w}x{h}:r={fps}"]
    if _usable(scene.audio_path):
        cmd += ["-i", scene.audio_path]
    else:
        cmd += ["-f", "lavfi", "-t", str(d), "-i", "anullsrc=channel_layout=stereo:sample_rate=44100"]

    vf = f"scale={w}:{h}:force_original_aspect_ratio=increase,crop={w}:{h},setsar=1"
    if caption_path:
        drawtext = [f"textfile={_quote(caption_path)}"]
        if CAPTION_FONT_FILE and os.path.exists(CAPTION_FONT_FILE):
            drawtext.append(f"fontfile={_quote(CAPTION_FONT_FILE)}")
        drawtext += [
            # Caption text is literal; no %{...} expansion
            "expansion=none",
            f"fontsize={CAPTION_FONT_SIZE}",
            "fontcolor=white",
            "borderw=3",
            "bordercolor=black",
            "x=(w-text_w)/2",
            "line_spacing=12",
            "y=h-text_h-160",
        ]
        vf += ",drawtext=" + ":".join(drawtext)
    vf += ",format=yuv420p"

    cmd += [
        "-vf", vf,
        "-af", "apad",
        "-map", "0:v", "-map", "1:a",
        "-c:v", "libx264", "-pix_fmt", "yuv420p", "-r", str(fps),
        "-c:a", "aac", "-ar", "44100", "-ac", "2",
        "-t", str(d),
        out_path,
    ]
    return cmd

async def render_scene_clip(scene: Scene, index: int, out_path: str) -> str:
    caption_path = None
    if scene.caption:
        caption_path = out_path.replace(".mp4", "_caption.txt")
        write_text(caption_path, wrap_caption(scene.caption))
    cmd = build_scene_command(scene, out_path, caption_path)
    logger.info(f"Rendering scene {index + 1}: image={scene.image_path}, audio={scene.audio_path}, {scene.duration}s")
    try:
        await asyncio.to_thread(_run, cmd)
    except RuntimeError as e:
        raise CompositionError(f"Scene {index + 1} clip failed: {e}", stage="scene", scene_index=index) from e
    return out_path

async def concat_clips(clip_paths: List[str], out_path: str) -> str:
    list_path = out_path.replace(".mp4", "_concat.txt")
    write_text(list_path, "".join(f"file {_quote(p)}\n" for p in clip_paths))
    cmd = ["ffmpeg", "-y", "-f", "concat", "-safe", "0", "-i", list_path, "-c", "copy", out_path]
    try:
        await asyncio.to_thread(_run, cmd)
    except RuntimeError as e:
        raise CompositionError(f"Concatenation failed: {e}", stage="concat") from e
    finally:
        _remove_quietly(list_path)
    return out_path

async def compose_video(scenes: List[Scene], execution_id: str, output_dir: str) -> str:
    """Render one clip per scene, then join them in order into the final video.

    Any failing clip aborts the whole composition. Temporary clips are removed
    whether or not concatenation succeeds.
    """
    if not scenes:
        raise CompositionError("No scenes to compose", stage="scene")
    os.makedirs(output_dir, exist_ok=True)
    stamp = int(time.time() * 1000)
    out_path = os.path.join(output_dir, f"{execution_id}_{stamp}.mp4")
    logger.info(f"Composing {len(scenes)} scenes for {execution_id}")

    clip_paths: List[str] = []
    try:
        for i, scene in enumerate(scenes):
            clip = os.path.join(output_dir, f"{execution_id}_scene{i}_temp.mp4")
            clip_paths.append(clip)
            await render_scene_clip(scene, i, clip)
        await concat_clips(clip_paths, out_path)
    finally:
        for clip in clip_paths:
            _remove_quietly(clip)
            _remove_quietly(clip.replace(".mp4", "_caption.txt"))
    logger.info(f"Final video created: {out_path}")
    return out_path

def _remove_quietly(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove temporary file {path}: {e}")

def _run(cmd: List[str]):
    logger.info(f"Running FFmpeg command: {' '.join(cmd)[:200]}")
    try:
        proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except OSError as e:
        logger.error(f"Could not start FFmpeg: {e}")
        raise RuntimeError(f"FFmpeg could not be started: {e}") from e
    if proc.returncode != 0:
        error_msg = proc.stderr.decode("utf-8", errors="ignore")
        logger.error(f"FFmpeg command failed with return code {proc.returncode}: {error_msg[-1000:]}")
        raise RuntimeError(f"FFmpeg failed: {error_msg[-1000:]}")

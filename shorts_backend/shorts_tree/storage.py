"""
Local artifact store for generated images, audio and composed videos.

Files are named ``{execution_id}_{node_id}_{timestamp}.{ext}`` so that all
artifacts of one execution can be found and removed together.
"""
import io
import logging
import os
import time
from typing import Dict, List

import httpx
from PIL import Image

from .settings import GENERATED_DIR

logger = logging.getLogger(__name__)


def write_bytes(path: str, data: bytes):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)


def write_text(path: str, text: str):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)


def _to_png_if_webp(image_data: bytes) -> bytes:
    with Image.open(io.BytesIO(image_data)) as pil_img:
        if pil_img.format != "WEBP":
            return image_data
        if pil_img.mode in ("RGBA", "LA"):
            # Flatten onto white so ffmpeg does not see transparency
            background = Image.new("RGB", pil_img.size, (255, 255, 255))
            rgba = pil_img.convert("RGBA")
            background.paste(rgba, mask=rgba.split()[-1])
            converted = background
        else:
            converted = pil_img.convert("RGB")
        buf = io.BytesIO()
        converted.save(buf, format="PNG")
        return buf.getvalue()


class ArtifactStore:
    def __init__(self, base_dir: str = GENERATED_DIR):
        self.base_dir = base_dir
        self.images_dir = os.path.join(base_dir, "images")
        self.audio_dir = os.path.join(base_dir, "audio")
        self.videos_dir = os.path.join(base_dir, "videos")

    @property
    def _artifact_dirs(self) -> List[str]:
        return [self.images_dir, self.audio_dir]

    def ensure_directories(self):
        for d in (self.base_dir, self.images_dir, self.audio_dir, self.videos_dir):
            os.makedirs(d, exist_ok=True)

    def generate_filename(self, execution_id: str, node_id: str, extension: str) -> str:
        timestamp = int(time.time() * 1000)
        return f"{execution_id}_{node_id}_{timestamp}.{extension}"

    async def save_image_from_url(self, url: str, filename: str) -> str:
        logger.info(f"Downloading image {filename}")
        async with httpx.AsyncClient(timeout=60, follow_redirects=True) as client:
            r = await client.get(url)
            r.raise_for_status()
        image_data = r.content
        try:
            image_data = _to_png_if_webp(image_data)
        except OSError as e:
            logger.warning(f"Image conversion failed for {filename}: {e}, saving as-is")
        path = os.path.join(self.images_dir, filename)
        write_bytes(path, image_data)
        logger.info(f"Saved image to {path}")
        return path

    def save_audio(self, data: bytes, filename: str) -> str:
        path = os.path.join(self.audio_dir, filename)
        write_bytes(path, data)
        logger.info(f"Saved audio to {path}")
        return path

    def cleanup_old_files(self, max_age_hours: int = 24) -> int:
        max_age = max_age_hours * 60 * 60
        now = time.time()
        deleted = 0
        for d in self._artifact_dirs + [self.videos_dir]:
            if not os.path.isdir(d):
                continue
            for name in os.listdir(d):
                path = os.path.join(d, name)
                if not os.path.isfile(path):
                    continue
                if now - os.path.getmtime(path) > max_age:
                    os.remove(path)
                    deleted += 1
                    logger.info(f"Removed old file {name}")
        if deleted:
            logger.info(f"Cleaned up {deleted} files older than {max_age_hours}h")
        return deleted

    def delete_execution_files(self, execution_id: str) -> int:
        deleted = 0
        for d in self._artifact_dirs + [self.videos_dir]:
            if not os.path.isdir(d):
                continue
            for name in os.listdir(d):
                if name.startswith(f"{execution_id}_"):
                    os.remove(os.path.join(d, name))
                    deleted += 1
        logger.info(f"Deleted {deleted} files for execution {execution_id}")
        return deleted

    def disk_usage(self) -> Dict[str, object]:
        total_size = 0
        file_count = 0
        for d in self._artifact_dirs:
            if not os.path.isdir(d):
                continue
            for name in os.listdir(d):
                path = os.path.join(d, name)
                if os.path.isfile(path):
                    total_size += os.path.getsize(path)
                    file_count += 1
        return {
            "total_size": total_size,
            "total_size_mb": round(total_size / (1024 * 1024), 2),
            "file_count": file_count,
        }


# Global store instance
store = ArtifactStore()

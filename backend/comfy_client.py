import asyncio
import logging
import uuid
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from .errors import ProviderUnavailable

logger = logging.getLogger(__name__)


async def upload_sketch(client: httpx.AsyncClient, base_url: str, image: bytes, fmt: str = "png") -> str:
    """
    Upload the sketch into ComfyUI's input folder so LoadImage can read it.
    Returns the stored filename.
    """
    filename = f"sketch_{uuid.uuid4().hex[:12]}.{fmt}"
    files = {"image": (filename, image, f"image/{fmt}")}
    r = await client.post(f"{base_url}/upload/image", files=files, data={"overwrite": "true"})
    r.raise_for_status()
    data = r.json()
    name = data.get("name") or filename
    subfolder = data.get("subfolder") or ""
    return f"{subfolder}/{name}" if subfolder else name


async def send_workflow_to_comfy(
    client: httpx.AsyncClient, base_url: str, workflow_json: Dict[str, Any], client_id: Optional[str] = None
) -> str:
    """
    Submit a workflow to ComfyUI /prompt.
    Returns the prompt_id used to query /history.
    """
    payload = {
        "prompt": workflow_json,
        "client_id": client_id,
    }

    r = await client.post(f"{base_url}/prompt", json=payload)

    if r.status_code != 200:
        logger.error("ComfyUI returned %s: %s", r.status_code, r.text[:500])

    r.raise_for_status()
    data = r.json()
    # {"prompt_id": "...", "number": ..., "node_errors": {}}
    prompt_id = data.get("prompt_id")
    if not prompt_id:
        raise ProviderUnavailable(f"ComfyUI did not return a prompt_id: {data}", retryable=False)
    logger.debug("Got prompt_id %s", prompt_id)
    return prompt_id


async def wait_for_result(
    client: httpx.AsyncClient, base_url: str, prompt_id: str, poll_interval: float = 1.0
) -> Dict[str, Any]:
    """
    Poll /history/{prompt_id} until the prompt shows up.
    Returns history[prompt_id]. The caller bounds the wait.
    """
    url = f"{base_url}/history/{prompt_id}"

    while True:
        r = await client.get(url)
        if r.status_code == 200:
            data = r.json()
            if prompt_id in data:
                item = data[prompt_id]
                status = item.get("status", {})
                if status.get("status_str") == "error":
                    raise ProviderUnavailable(
                        f"ComfyUI execution failed for {prompt_id}", retryable=False
                    )
                return item
        await asyncio.sleep(poll_interval)


def extract_first_image_from_history(history_item: Dict[str, Any]) -> Optional[Tuple[str, str, str]]:
    """
    Find the first image in the history outputs.
    Returns (filename, subfolder, type) or None.
    """
    outputs = history_item.get("outputs", {})
    for node_id, node_out in outputs.items():
        images = node_out.get("images")
        if not images:
            continue
        img = images[0]
        filename = img.get("filename")
        subfolder = img.get("subfolder", "")
        img_type = img.get("type", "output")
        if filename:
            return filename, subfolder, img_type
    return None


def build_image_url(base_url: str, filename: str, subfolder: str, img_type: str) -> str:
    query = urlencode({"filename": filename, "subfolder": subfolder, "type": img_type})
    return f"{base_url.rstrip('/')}/view?{query}"


async def download_image(client: httpx.AsyncClient, image_url: str) -> bytes:
    r = await client.get(image_url)
    r.raise_for_status()
    return r.content

# backend/workflow_builder.py

import copy
import random
from typing import Any, Dict, Optional


# Sketch-to-image graph in ComfyUI API format. Node ids are stable so the
# setters below can also be used on workflows exported from the ComfyUI UI.
IMG2IMG_TEMPLATE: Dict[str, Any] = {
    "1": {
        "class_type": "CheckpointLoaderSimple",
        "inputs": {"ckpt_name": "v1-5-pruned-emaonly.safetensors"},
    },
    "2": {
        "class_type": "LoadImage",
        "inputs": {"image": ""},
    },
    "3": {
        "class_type": "ImageScale",
        "inputs": {
            "upscale_method": "lanczos",
            "width": 512,
            "height": 512,
            "crop": "disabled",
            "image": ["2", 0],
        },
    },
    "4": {
        "class_type": "VAEEncode",
        "inputs": {"pixels": ["3", 0], "vae": ["1", 2]},
    },
    "5": {
        "class_type": "CLIPTextEncode",
        "_meta": {"title": "Positive"},
        "inputs": {"text": "", "clip": ["1", 1]},
    },
    "6": {
        "class_type": "CLIPTextEncode",
        "_meta": {"title": "Negative"},
        "inputs": {"text": "", "clip": ["1", 1]},
    },
    "7": {
        "class_type": "KSampler",
        "inputs": {
            "seed": 0,
            "steps": 20,
            "cfg": 7.5,
            "sampler_name": "dpmpp_2m",
            "scheduler": "karras",
            "denoise": 0.8,
            "model": ["1", 0],
            "positive": ["5", 0],
            "negative": ["6", 0],
            "latent_image": ["4", 0],
        },
    },
    "8": {
        "class_type": "VAEDecode",
        "inputs": {"samples": ["7", 0], "vae": ["1", 2]},
    },
    "9": {
        "class_type": "SaveImage",
        "inputs": {"filename_prefix": "sketch_render", "images": ["8", 0]},
    },
}

DEFAULT_NEGATIVE = "blurry, low quality, distorted"


def _nodes(workflow: Dict[str, Any], class_type: str):
    for node_id, node in workflow.items():
        if isinstance(node, dict) and node.get("class_type") == class_type:
            yield node_id, node


def _set_seed(workflow: Dict[str, Any], seed: Optional[int]) -> int:
    """
    Set the seed of the first KSampler. A random 64-bit seed is drawn when
    the request does not pin one.
    """
    seed_val = seed if seed is not None else random.randint(0, 2**63 - 1)
    for _, node in _nodes(workflow, "KSampler"):
        node["inputs"]["seed"] = seed_val
        break
    return seed_val


def _set_text(workflow: Dict[str, Any], title: str, text: str) -> None:
    for _, node in _nodes(workflow, "CLIPTextEncode"):
        if node.get("_meta", {}).get("title") == title:
            node["inputs"]["text"] = text
            return


def _set_sampler(workflow: Dict[str, Any], steps: int, cfg: float, denoise: float) -> None:
    for _, node in _nodes(workflow, "KSampler"):
        inputs = node["inputs"]
        inputs["steps"] = steps
        inputs["cfg"] = cfg
        inputs["denoise"] = denoise
        return


def build_sketch_workflow(
    prompt: str,
    sketch_filename: str,
    *,
    width: int,
    height: int,
    steps: int,
    guidance: float,
    strength: float,
    seed: Optional[int] = None,
    negative_prompt: Optional[str] = None,
    checkpoint: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build the img2img workflow:
    - LoadImage points at the uploaded sketch (already in ComfyUI's input folder)
    - ImageScale resizes it to the target size
    - positive / negative prompts, sampler settings and seed from the request
    """
    wf = copy.deepcopy(IMG2IMG_TEMPLATE)

    for _, node in _nodes(wf, "LoadImage"):
        node["inputs"]["image"] = sketch_filename
    for _, node in _nodes(wf, "ImageScale"):
        node["inputs"]["width"] = width
        node["inputs"]["height"] = height
    if checkpoint:
        for _, node in _nodes(wf, "CheckpointLoaderSimple"):
            node["inputs"]["ckpt_name"] = checkpoint

    _set_text(wf, "Positive", prompt)
    _set_text(wf, "Negative", negative_prompt or DEFAULT_NEGATIVE)
    _set_sampler(wf, steps=steps, cfg=guidance, denoise=strength)
    _set_seed(wf, seed)
    return wf


def workflow_seed(workflow: Dict[str, Any]) -> Optional[int]:
    for _, node in _nodes(workflow, "KSampler"):
        return node["inputs"].get("seed")
    return None

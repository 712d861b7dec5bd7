import uuid
from typing import Optional


def gen_job_id() -> str:
    return str(uuid.uuid4())


def enhance_prompt(prompt: str, style_preset: Optional[object] = None) -> str:
    """
    Prompt actually sent to a provider: the user's prompt followed by the
    style preset's modifier, if any.
    """
    prompt = prompt.strip()
    modifier = getattr(style_preset, "prompt_modifier", "") if style_preset else ""
    if modifier and modifier.strip():
        return f"{prompt}, {modifier.strip()}"
    return prompt


def negative_prompt_for(request) -> Optional[str]:
    """Explicit negative prompt wins over the style preset's one."""
    if request.negative_prompt:
        return request.negative_prompt
    if request.style_preset and request.style_preset.technical_params.negative_prompt:
        return request.style_preset.technical_params.negative_prompt
    return None

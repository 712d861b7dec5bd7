import json

import httpx
import pytest

from backend.errors import ProviderUnavailable
from backend.model import ComfyUIProviderConfig, GenerationParams
from backend.provider_clients import ComfyUIAdapter
from backend.workflow_builder import build_sketch_workflow, workflow_seed

from conftest import make_request, png_bytes


class FakeComfy:
    """Minimal ComfyUI HTTP API: upload, prompt, history, view."""

    def __init__(self, status_str: str = "success") -> None:
        self.status_str = status_str
        self.workflows = []
        self.history_polls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/upload/image":
            return httpx.Response(200, json={"name": "sketch_abc.png", "subfolder": "", "type": "input"})
        if path == "/prompt":
            self.workflows.append(json.loads(request.content)["prompt"])
            return httpx.Response(200, json={"prompt_id": "p1", "number": 1, "node_errors": {}})
        if path == "/history/p1":
            self.history_polls += 1
            if self.history_polls < 2:
                return httpx.Response(200, json={})
            return httpx.Response(
                200,
                json={
                    "p1": {
                        "status": {"status_str": self.status_str},
                        "outputs": {
                            "9": {"images": [{"filename": "out.png", "subfolder": "", "type": "output"}]}
                        },
                    }
                },
            )
        if path == "/view":
            return httpx.Response(200, content=png_bytes(64, 48, color=(0, 200, 0)))
        if path == "/system_stats":
            return httpx.Response(200, json={"system": {}})
        return httpx.Response(404)


def make_adapter(comfy: FakeComfy) -> ComfyUIAdapter:
    config = ComfyUIProviderConfig(id="comfyui", base_url="http://comfy.test", poll_interval=0.01)
    return ComfyUIAdapter(config, transport=httpx.MockTransport(comfy))


class TestComfyUIAdapter:
    @pytest.mark.asyncio
    async def test_generate_runs_full_round_trip(self) -> None:
        comfy = FakeComfy()
        adapter = make_adapter(comfy)
        request = make_request(prompt="a castle", params=GenerationParams(seed=7, steps=12))

        output = await adapter.generate(request, "a castle, oil painting")

        assert output.data == png_bytes(64, 48, color=(0, 200, 0))
        assert output.parameters["seed"] == 7
        assert output.parameters["steps"] == 12
        assert "filename=out.png" in output.url
        assert comfy.history_polls == 2

        workflow = comfy.workflows[0]
        assert workflow["2"]["inputs"]["image"] == "sketch_abc.png"
        assert workflow["5"]["inputs"]["text"] == "a castle, oil painting"
        assert workflow["7"]["inputs"]["seed"] == 7

    @pytest.mark.asyncio
    async def test_execution_error_is_not_retryable(self) -> None:
        adapter = make_adapter(FakeComfy(status_str="error"))
        with pytest.raises(ProviderUnavailable) as exc:
            await adapter.generate(make_request(), "a castle")
        assert exc.value.retryable is False

    @pytest.mark.asyncio
    async def test_probe(self) -> None:
        assert await make_adapter(FakeComfy()).probe() is True


class TestWorkflowBuilder:
    def test_sets_size_sampler_and_prompts(self) -> None:
        wf = build_sketch_workflow(
            "a boat",
            "sketch.png",
            width=640,
            height=480,
            steps=30,
            guidance=6.0,
            strength=0.55,
            seed=99,
            negative_prompt="text, watermark",
        )
        assert wf["3"]["inputs"]["width"] == 640
        assert wf["3"]["inputs"]["height"] == 480
        assert wf["7"]["inputs"]["steps"] == 30
        assert wf["7"]["inputs"]["cfg"] == 6.0
        assert wf["7"]["inputs"]["denoise"] == 0.55
        assert wf["6"]["inputs"]["text"] == "text, watermark"
        assert workflow_seed(wf) == 99

    def test_random_seed_when_unpinned(self) -> None:
        wf = build_sketch_workflow(
            "a boat", "sketch.png", width=512, height=512, steps=20, guidance=7.5, strength=0.8
        )
        assert isinstance(workflow_seed(wf), int)

    def test_template_is_not_mutated(self) -> None:
        a = build_sketch_workflow("one", "a.png", width=512, height=512, steps=20, guidance=7.5, strength=0.8, seed=1)
        b = build_sketch_workflow("two", "b.png", width=512, height=512, steps=20, guidance=7.5, strength=0.8, seed=2)
        assert a["5"]["inputs"]["text"] == "one"
        assert b["5"]["inputs"]["text"] == "two"

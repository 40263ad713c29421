import json

import httpx
import pytest

from ollama_mcp.errors import (
    CustomModelError,
    IncompleteStreamError,
    ModelNotInstalled,
    ProtocolDecodeError,
    ServerStatusError,
    TransportError,
)
from ollama_mcp.models import ChatMessage, ChatRole, Delta, Done, InferenceRequest
from ollama_mcp.ollama_client import OllamaClient
from ollama_mcp.transport import Transport

from .conftest import ChunkStream, FakeOllama, ndjson_lines, ndjson_response


def generate_request(**kwargs) -> InferenceRequest:
    return InferenceRequest(model="llama3", prompt="2+2?", **kwargs)


async def drain(stream):
    return [event async for event in stream]


class TrackedStream(ChunkStream):
    closed = False

    async def aclose(self):
        self.closed = True


class TestStreaming:
    @pytest.mark.asyncio
    async def test_delta_then_done_with_counters(self, cfg):
        server = FakeOllama(lambda path, payload: ndjson_response(
            {"model": "llama3", "response": "4", "done": False},
            {"model": "llama3", "response": "", "done": True, "eval_count": 3, "eval_duration": 500000000},
            chunk_size=7,
        ))
        client = server.client(cfg)

        events = await drain(client.stream(generate_request()))

        assert events[0] == Delta("4")
        assert len(events) == 2
        assert isinstance(events[1], Done)
        assert events[1].record.eval_count == 3
        assert events[1].record.eval_duration == 500000000
        assert server.paths == ["/api/generate"]
        assert server.requests[0]["stream"] is True
        assert server.requests[0]["prompt"] == "2+2?"

    @pytest.mark.asyncio
    async def test_chat_example(self, cfg):
        server = FakeOllama(lambda path, payload: ndjson_response(
            {"message": {"content": "4"}},
            {"done": True, "eval_count": 3, "eval_duration": 500000000},
        ))
        request = InferenceRequest(model="llama3", messages=[ChatMessage(role=ChatRole.USER, content="2+2?")])

        events = await drain(server.client(cfg).stream(request))

        assert events[0] == Delta("4")
        assert isinstance(events[1], Done)
        assert (events[1].record.eval_count, events[1].record.eval_duration) == (3, 500000000)
        assert len(events) == 2

    @pytest.mark.asyncio
    async def test_empty_stream_is_incomplete(self, cfg):
        client = FakeOllama(lambda path, payload: httpx.Response(200, content=b"")).client(cfg)

        with pytest.raises(IncompleteStreamError):
            await drain(client.stream(generate_request()))

    @pytest.mark.asyncio
    async def test_done_only_stream_defaults_missing_counters(self, cfg):
        client = FakeOllama(lambda path, payload: ndjson_response({"done": True})).client(cfg)

        events = await drain(client.stream(generate_request()))

        assert len(events) == 1
        record = events[0].record
        assert record.eval_count == 0
        assert record.total_duration == 0
        assert record.prompt_eval_count == 0

    @pytest.mark.asyncio
    async def test_chat_endpoint_and_generate_context(self, cfg):
        server = FakeOllama(lambda path, payload: ndjson_response(
            {"message": {"role": "assistant", "content": "Hel"}, "done": False},
            {"message": {"role": "assistant", "content": "lo"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True, "done_reason": "stop"},
        ))
        client = server.client(cfg)
        request = InferenceRequest(
            model="llama3",
            messages=[ChatMessage(role=ChatRole.USER, content="hi")],
            keep_alive="5m",
        )

        events = await drain(client.stream(request))

        assert [e.content for e in events if isinstance(e, Delta)] == ["Hel", "lo"]
        assert events[-1].record.done_reason == "stop"
        assert server.paths == ["/api/chat"]
        assert server.requests[0]["messages"] == [{"role": "user", "content": "hi"}]
        assert server.requests[0]["keep_alive"] == "5m"

    @pytest.mark.asyncio
    async def test_stream_without_done_raises(self, cfg):
        client = FakeOllama(lambda path, payload: ndjson_response(
            {"response": "par", "done": False},
            {"response": "tial", "done": False},
        )).client(cfg)

        events = []
        with pytest.raises(IncompleteStreamError):
            async for event in client.stream(generate_request()):
                events.append(event)

        assert events == [Delta("par"), Delta("tial")]

    @pytest.mark.asyncio
    async def test_lines_after_done_are_not_forwarded(self, cfg):
        client = FakeOllama(lambda path, payload: ndjson_response(
            {"response": "a", "done": True},
            {"response": "ignored", "done": False},
        )).client(cfg)

        events = await drain(client.stream(generate_request()))

        assert events[0] == Delta("a")
        assert isinstance(events[1], Done)
        assert len(events) == 2

    @pytest.mark.asyncio
    async def test_malformed_line_raises_decode_error(self, cfg):
        def handler(path, payload):
            return httpx.Response(200, stream=ChunkStream([b'{"response": "a", "done": false}\nnot json\n']))

        client = FakeOllama(handler).client(cfg)

        with pytest.raises(ProtocolDecodeError):
            await drain(client.stream(generate_request()))

    @pytest.mark.asyncio
    async def test_cancel_stops_forwarding_and_releases_response(self, cfg):
        body = TrackedStream([ndjson_lines(
            {"response": "one", "done": False},
            {"response": "two", "done": False},
            {"response": "", "done": True},
        )])
        client = FakeOllama(lambda path, payload: httpx.Response(200, stream=body)).client(cfg)

        stream = client.stream(generate_request())
        received = []
        async for event in stream:
            received.append(event)
            stream.cancel()

        assert received == [Delta("one")]
        assert stream.cancelled
        assert body.closed

    @pytest.mark.asyncio
    async def test_response_released_after_done(self, cfg):
        body = TrackedStream([ndjson_lines({"response": "4", "done": True})])
        client = FakeOllama(lambda path, payload: httpx.Response(200, stream=body)).client(cfg)

        stream = client.stream(generate_request())
        events = await drain(stream)

        assert isinstance(events[-1], Done)
        assert body.closed
        assert not stream.cancelled


class TestErrorClassification:
    @pytest.mark.asyncio
    async def test_model_not_found_status(self, cfg):
        client = FakeOllama(lambda path, payload: httpx.Response(
            404, json={"error": 'model "llama9" not found, try pulling it first'},
        )).client(cfg)

        with pytest.raises(ModelNotInstalled) as exc_info:
            await drain(client.stream(InferenceRequest(model="llama9", prompt="hi")))

        assert exc_info.value.model == "llama9"
        assert "ollama pull llama9" in exc_info.value.remediation

    @pytest.mark.asyncio
    async def test_model_not_found_in_stream(self, cfg):
        client = FakeOllama(lambda path, payload: ndjson_response(
            {"error": "model 'mistral' not found"},
        )).client(cfg)

        with pytest.raises(ModelNotInstalled):
            await drain(client.stream(generate_request()))

    @pytest.mark.asyncio
    async def test_custom_model_missing_file(self, cfg):
        client = FakeOllama(lambda path, payload: httpx.Response(500, json={
            "error": "open /models/blobs/sha256-abc: no such file or directory",
        })).client(cfg)

        with pytest.raises(CustomModelError) as exc_info:
            await drain(client.stream(InferenceRequest(model="my-model", prompt="hi")))

        assert exc_info.value.model == "my-model"
        assert exc_info.value.file == "/models/blobs/sha256-abc"

    @pytest.mark.asyncio
    async def test_unclassified_status_is_transport_error(self, cfg):
        client = FakeOllama(lambda path, payload: httpx.Response(500, text="internal failure")).client(cfg)

        with pytest.raises(ServerStatusError) as exc_info:
            await drain(client.stream(generate_request()))

        assert exc_info.value.status_code == 500
        assert isinstance(exc_info.value, TransportError)

    @pytest.mark.asyncio
    async def test_unclassified_in_stream_error(self, cfg):
        client = FakeOllama(lambda path, payload: ndjson_response(
            {"response": "a", "done": False},
            {"error": "out of memory"},
        )).client(cfg)

        with pytest.raises(TransportError) as exc_info:
            await drain(client.stream(generate_request()))

        assert "out of memory" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connection_refused(self, cfg):
        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = OllamaClient(cfg, transport=Transport(cfg=cfg, client=http))

        with pytest.raises(TransportError) as exc_info:
            await drain(client.stream(generate_request()))

        assert exc_info.value.kind == "refused"

    @pytest.mark.asyncio
    async def test_timeout(self, cfg):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = OllamaClient(cfg, transport=Transport(cfg=cfg, client=http))

        with pytest.raises(TransportError) as exc_info:
            await client.run(generate_request())

        assert exc_info.value.kind == "timeout"


class TestRunSync:
    @pytest.mark.asyncio
    async def test_collects_content_and_tool_calls(self, cfg):
        tool_calls = [{"function": {"name": "calc__add", "arguments": {"a": 2, "b": 3}}}]
        server = FakeOllama(lambda path, payload: httpx.Response(200, json={
            "model": "llama3",
            "message": {"role": "assistant", "content": "", "tool_calls": tool_calls},
            "done": True,
            "eval_count": 12,
        }))
        client = server.client(cfg)
        request = InferenceRequest(
            model="llama3",
            messages=[ChatMessage(role=ChatRole.USER, content="add 2 and 3")],
            tools=[{"type": "function", "function": {"name": "calc__add"}}],
        )

        result = await client.run(request)

        assert result.content == ""
        assert result.tool_calls == tool_calls
        assert result.record.eval_count == 12
        assert server.requests[0]["stream"] is False
        assert server.requests[0]["tools"][0]["function"]["name"] == "calc__add"

    @pytest.mark.asyncio
    async def test_keeps_content_of_single_document(self, cfg):
        client = FakeOllama(lambda path, payload: httpx.Response(200, content=json.dumps({
            "response": "The answer is 4.", "done": True, "context": [1, 2, 3],
        }).encode())).client(cfg)

        result = await client.run(generate_request(context=[9, 9]))

        assert result.content == "The answer is 4."
        assert result.record.context == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_forwards_context_for_generate(self, cfg):
        server = FakeOllama(lambda path, payload: httpx.Response(200, json={"response": "ok", "done": True}))
        client = server.client(cfg)

        await client.run(generate_request(context=[7, 8]))

        assert server.requests[0]["context"] == [7, 8]


class TestListing:
    @pytest.mark.asyncio
    async def test_list_models_and_running(self, cfg):
        def handler(request):
            if request.url.path == "/api/tags":
                return httpx.Response(200, json={"models": [{"name": "llama3:latest"}]})
            return httpx.Response(200, json={"models": []})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = OllamaClient(cfg, transport=Transport(cfg=cfg, client=http))

        assert await client.list_models() == [{"name": "llama3:latest"}]
        assert await client.list_running() == []
        assert client.base_url == "http://ollama.test"

#!/usr/bin/env python3
"""
Smoke test against a running orchestrator.

Checks:
1. Health check
2. Model listing
3. Non-streaming inference
4. Streaming inference
5. Chat turn with tool calling (if providers are configured)

Usage:
    python smoke.py [--with-tools] [--model llama3]
"""

import argparse
import asyncio
import json
import sys
import uuid

import httpx


ORCH_URL = "http://localhost:8000"


async def check_health():
    """Test health endpoint."""
    print("\n=== Testing Health ===")

    async with httpx.AsyncClient() as client:
        try:
            resp = await client.get(f"{ORCH_URL}/health")
            resp.raise_for_status()
            data = resp.json()
            print(f"Status: {data.get('status')}")
            print(f"Ollama: {data.get('ollama_url')}")
            print(f"Model: {data.get('model')}")
            return True
        except httpx.HTTPError as e:
            print(f"Health check failed: {e}")
            return False


async def check_models():
    """Test models endpoint."""
    print("\n=== Testing Models ===")

    async with httpx.AsyncClient() as client:
        try:
            resp = await client.get(f"{ORCH_URL}/v1/models")
            resp.raise_for_status()
            models = resp.json().get("models", [])
            print(f"Found {len(models)} models:")
            for m in models[:5]:
                print(f"  - {m.get('name')}")
            return True
        except httpx.HTTPError as e:
            print(f"Models test failed: {e}")
            return False


async def check_inference(model: str):
    """Test non-streaming inference."""
    print("\n=== Testing Inference ===")

    async with httpx.AsyncClient(timeout=120.0) as client:
        try:
            resp = await client.post(
                f"{ORCH_URL}/v1/inference",
                json={
                    "model": model,
                    "prompt": "Say 'Hello from orchestrator' and nothing else.",
                    "stream": False,
                },
            )
            resp.raise_for_status()
            data = resp.json()
            print(f"Response: {data.get('content', '')[:200]}")
            print(f"eval_count: {data.get('done', {}).get('eval_count')}")
            return True
        except httpx.HTTPError as e:
            print(f"Inference test failed: {e}")
            return False


async def stream_events(client: httpx.AsyncClient, url: str, body: dict) -> bool:
    """Print delta events as they arrive; True once a done event was seen."""
    done = False
    deltas = 0

    async with client.stream("POST", url, json=body) as resp:
        if resp.status_code >= 400:
            print(f"HTTP {resp.status_code}: {(await resp.aread()).decode()}")
            return False

        async for line in resp.aiter_lines():
            if not line:
                continue
            event = json.loads(line)
            if event["type"] == "delta":
                deltas += 1
                print(event["content"], end="", flush=True)
            elif event["type"] == "done":
                done = True
                print(f"\n[done: eval_count={event.get('eval_count')}, tool_calls={len(event.get('tool_calls', []))}]")
            else:
                print(f"\n[error: {event['error']['message']}]")

    print(f"Total deltas: {deltas}")
    return done


async def check_streaming(model: str):
    """Test streaming inference."""
    print("\n=== Testing Streaming Inference ===")

    async with httpx.AsyncClient(timeout=120.0) as client:
        try:
            return await stream_events(client, f"{ORCH_URL}/v1/inference", {
                "model": model,
                "messages": [{"role": "user", "content": "Count from 1 to 5."}],
            })
        except httpx.HTTPError as e:
            print(f"Streaming test failed: {e}")
            return False


async def check_tool_turn():
    """Test a chat turn that may call tools (requires configured providers)."""
    print("\n=== Testing Chat Turn With Tools ===")
    session_id = f"smoke-{uuid.uuid4().hex[:8]}"

    async with httpx.AsyncClient(timeout=180.0) as client:
        try:
            resp = await client.get(f"{ORCH_URL}/v1/sessions/{session_id}/tools")
            resp.raise_for_status()
            catalog = resp.json()
            print(f"Tools: {[t['provider'] + '__' + t['name'] for t in catalog['tools']]}")
            for name, reason in catalog["failures"].items():
                print(f"  unavailable: {name}: {reason}")

            if not catalog["tools"]:
                print("No tools available. Configure mcp_servers.json first.")
                return False

            return await stream_events(client, f"{ORCH_URL}/v1/sessions/{session_id}/turn", {
                "query": "Use the available tools to answer: what tools do you have?",
            })
        except httpx.HTTPError as e:
            print(f"Tool turn failed: {e}")
            return False
        finally:
            await client.delete(f"{ORCH_URL}/v1/sessions/{session_id}")


async def main():
    parser = argparse.ArgumentParser(description="Smoke test the orchestrator")
    parser.add_argument("--with-tools", action="store_true", help="Include the tool-calling chat turn")
    parser.add_argument("--model", default="llama3", help="Model for inference checks")
    args = parser.parse_args()

    print("=" * 60)
    print("Orchestrator Smoke Test")
    print("=" * 60)
    print(f"Target: {ORCH_URL}")

    results = {}

    results["health"] = await check_health()

    if not results["health"]:
        print("\nOrchestrator not running. Start with: ollama-mcp")
        sys.exit(1)

    results["models"] = await check_models()
    results["inference"] = await check_inference(args.model)
    results["streaming"] = await check_streaming(args.model)

    if args.with_tools:
        results["tool_turn"] = await check_tool_turn()

    print("\n" + "=" * 60)
    print("Results:")
    print("=" * 60)
    for check, passed in results.items():
        status = "PASS" if passed else "FAIL"
        print(f"  {check}: {status}")

    all_passed = all(results.values())
    print("=" * 60)
    print(f"Overall: {'ALL PASSED' if all_passed else 'SOME FAILED'}")

    sys.exit(0 if all_passed else 1)


if __name__ == "__main__":
    asyncio.run(main())

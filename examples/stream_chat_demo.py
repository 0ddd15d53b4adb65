"""Minimal console demonstration of the streaming chat client."""

import asyncio

from xinyu_core.api.service import get_default_client


async def main() -> None:
    client = get_default_client()
    for question in ["最近工作压力很大，晚上总是睡不着", "有什么办法能让我放松一点吗？"]:
        print("User:", question)
        print("Assistant: ", end="", flush=True)
        async with client.stream_with_history(question) as stream:
            async for fragment in stream:
                print(fragment, end="", flush=True)
        print()


if __name__ == "__main__":
    asyncio.run(main())

"""Timeline demo: a few personas posting and reacting on an in-memory network.

By default the example runs offline with the template generator (no LLM calls):

    uv run python examples/timeline/run.py --seconds 5

To generate posts and replies with an LLM (requires provider, model, API key),
pass `--llm`:

    uv run python examples/timeline/run.py --llm --seconds 20

Environment variables expected when `--llm` is used:
- `LLM_PROVIDER` (e.g., `openai`)
- `LLM_MODEL` (e.g., `gpt-4o-mini`)
- Provider-specific API key (e.g., `OPENAI_API_KEY`)
"""

from __future__ import annotations

import argparse
import asyncio
import random
from pathlib import Path

from puppetverse import (
    AgentLoader,
    EventPriority,
    InMemoryNetwork,
    JsonPersistence,
    LLMContentGenerator,
    Runtime,
    TemplateContentGenerator,
)
from puppetverse.config import Config
from puppetverse.persistence import InMemoryPersistence

AGENTS_DIR = Path(__file__).parent / "agents"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--llm", action="store_true", help="Use the LLM content generator")
    parser.add_argument("--seconds", type=float, default=5.0, help="How long to run")
    parser.add_argument("--seed", type=int, default=7, help="Random seed for the demo")
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="Persist memories and cursors as JSON under this directory",
    )
    return parser.parse_args()


def print_timeline(network: InMemoryNetwork) -> None:
    print("\n=== Timeline ===")
    for item in sorted(network.items.values(), key=lambda i: i.created_at):
        prefix = ""
        if item.reply_to_id:
            prefix = f"(reply to {item.reply_to_id}) "
        elif item.quote_to_id:
            prefix = f"(quoting {item.quote_to_id}) "
        print(f"{item.id:>12} @{item.author_username or item.author_id}: {prefix}{item.content}")

    if network.likes:
        print("\n=== Likes ===")
        for agent_id, item_ids in sorted(network.likes.items()):
            print(f"{agent_id}: {', '.join(sorted(item_ids))}")


async def main() -> None:
    args = parse_args()
    rng = random.Random(args.seed)

    if args.llm:
        Config.validate()
        print(Config.display())

    network = InMemoryNetwork()
    definitions = AgentLoader(AGENTS_DIR).load_all()
    for definition in definitions:
        profile = definition.profile
        network.register_account(profile.agent_id, profile.username)
    network.register_account("human", "human")

    persistence = JsonPersistence(args.data_dir) if args.data_dir else InMemoryPersistence()
    generator = (
        LLMContentGenerator()
        if args.llm
        else TemplateContentGenerator(rng=random.Random(args.seed))
    )

    runtime = Runtime(
        network,
        generator,
        persistence=persistence,
        rng=rng,
        tick_seconds=0.5,
        first_post_delay=0,
        polling_interval=1.0,
        use_streaming=False,
    )
    if args.llm:
        generator.memory = runtime.memory

    await runtime.load_agents(definitions)
    await runtime.start()
    try:
        await asyncio.sleep(1.0)
        network.add_item("@techie_bot what keyboard should I buy?", "human")
        runtime.events.create_event(
            "news",
            {"headline": "Open-source model tops benchmark", "topic": "AI"},
            priority=EventPriority.HIGH,
        )
        runtime.events.create_event(
            "interaction_prompt",
            {"initiator": "skeptic", "target": "techie", "topic": "AI"},
            target_agent_ids=["skeptic"],
        )
        await asyncio.sleep(max(args.seconds - 1.0, 0.0))
        await runtime.events.join()
    finally:
        await runtime.stop()

    print_timeline(network)


if __name__ == "__main__":
    asyncio.run(main())

"""Atlas - multi-agent research assistant

Simple CLI for running research questions.
"""

import argparse
import asyncio
import sys

from atlas.agents.orchestrator import ResearchOrchestrator
from atlas.models.research import ResearchMode


async def run_research(question: str, mode: ResearchMode) -> int:
    """Run research on the given question."""
    print(f"Research question: {question}")
    print("-" * 50)

    orchestrator = ResearchOrchestrator()
    exit_code = 0

    async for event in orchestrator.research(question, mode):
        event_type = event.event.value
        data = event.data

        if event_type == "progress":
            line = f"[{data.get('progress', 0):>3}%] {data.get('phase', '')}"
            if data.get("details"):
                line += f" - {data['details']}"
            print(line)

        elif event_type == "complete":
            metadata = data.get("metadata", {})
            print(f"\n[*] Research Complete!")
            print(f"   Report: {data.get('filename')}")
            print(f"   Tokens: {metadata.get('totalTokens', 0)}")
            print(f"   Subtopics: {metadata.get('subtopicsInvestigated', 0)}")
            print(f"   Sources: {metadata.get('sourcesEvaluated', 0)}")
            print(f"\n{'='*50}")
            print("REPORT:")
            print(f"{'='*50}")
            print(data.get("reportContent", ""))

        elif event_type == "error":
            print(f"\n[!] Error: {data.get('error', 'Unknown error')}")
            exit_code = 1

    return exit_code


def main():
    parser = argparse.ArgumentParser(description="Atlas multi-agent research assistant")
    parser.add_argument("--question", "-q", required=True, help="Research question")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in ResearchMode],
        default=ResearchMode.NORMAL.value,
        help="Research depth (max evaluates every source found)",
    )

    args = parser.parse_args()

    sys.exit(asyncio.run(run_research(args.question, ResearchMode(args.mode))))


if __name__ == "__main__":
    main()

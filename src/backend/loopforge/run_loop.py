# [Core: Command Line]
"""
Run the writer/reviewer loop from the command line.

Usage:
    cd src/backend
    python -m loopforge.run_loop --brief "Write a haiku about rivers" \\
        --criteria "Judge imagery and form"
    python -m loopforge.run_loop --brief-file brief.md --criteria-file rubric.md \\
        --background notes.pdf --background chart.png --interactive
    python -m loopforge.run_loop ... --output final.txt --history-json run.json

With --interactive, each pause offers the consolidated feedback for editing
and asks how many extra rounds to run (0 stops).
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from loopforge.agent.background import file_part, text_part
from loopforge.agent.controller import RunController
from loopforge.agent.errors import ConfigurationInvalidError, LoopForgeError
from loopforge.models.schemas import ContentPart, RunResult, RunState
from loopforge.services.model_client import ModelClient, OpenAICompatibleModelClient

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT = "final_selected_document.txt"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Iterative writer/reviewer refinement")
    brief = parser.add_mutually_exclusive_group(required=True)
    brief.add_argument("--brief", type=str, help="Writer brief text")
    brief.add_argument("--brief-file", type=Path, help="File holding the writer brief")
    criteria = parser.add_mutually_exclusive_group(required=True)
    criteria.add_argument("--criteria", type=str, help="Reviewer criteria text")
    criteria.add_argument("--criteria-file", type=Path, help="File holding the reviewer criteria")

    parser.add_argument("--background", type=Path, action="append", default=[],
                        help="Background file (text, image or PDF); repeatable")
    parser.add_argument("--paste", type=str, action="append", default=[],
                        help="Background text; repeatable")

    parser.add_argument("--model", type=str, default=None, help="Model name")
    parser.add_argument("--min-iterations", type=int, default=None)
    parser.add_argument("--max-iterations", type=int, default=None)
    parser.add_argument("--target-score", type=int, default=None)
    parser.add_argument("--drafts", type=int, default=None, help="Drafts per round (1-3)")

    parser.add_argument("--interactive", action="store_true",
                        help="Offer feedback editing and manual rounds at each pause")
    parser.add_argument("--output", type=Path, default=Path(DEFAULT_OUTPUT),
                        help="Where to write the final selected draft")
    parser.add_argument("--history-json", type=Path, default=None,
                        help="Also dump the iteration history and token ledger as JSON")
    parser.add_argument("--quiet", action="store_true")
    return parser


def _read_text(inline: Optional[str], path: Optional[Path]) -> str:
    if path is not None:
        return path.read_text(encoding="utf-8")
    return inline or ""


def collect_background(files: Sequence[Path], pasted: Sequence[str]) -> List[ContentPart]:
    parts = [file_part(path) for path in files]
    parts += [text_part(text, name=f"Pasted text {i}") for i, text in enumerate(pasted, 1)]
    return parts


def build_config(args: argparse.Namespace) -> dict:
    config = {
        "writer_brief": _read_text(args.brief, args.brief_file),
        "reviewer_criteria": _read_text(args.criteria, args.criteria_file),
        "background_material": collect_background(args.background, args.paste),
    }
    optional = {
        "model_name": args.model,
        "min_iterations": args.min_iterations,
        "max_iterations": args.max_iterations,
        "target_score": args.target_score,
        "draft_count": args.drafts,
    }
    config.update({k: v for k, v in optional.items() if v is not None})
    return config


def print_result(controller: RunController, result: RunResult) -> None:
    print(f"\n{'='*60}")
    print(f"  {result.status_message}")
    for record in controller.history:
        scores = [r.score for r in record.reviewer_output.draft_reviews] if record.reviewer_output else []
        print(f"  Round {record.id}: scores {scores}, selected score {record.selected_score}")
    totals = controller.token_totals
    print(
        f"  Tokens: {totals.input_tokens} in / {totals.output_tokens} out "
        f"/ {totals.total_tokens} total"
    )
    if result.error:
        where = f" ({result.error.role.value}, round {result.error.round_id})" if result.error.role else ""
        print(f"  Error [{result.error.kind}]{where}: {result.error.message}")
    print(f"{'='*60}")


def ask_next_batch(controller: RunController, prompt: Callable[[str], str]):
    """Ask for a round count and edited feedback. Returns None to stop."""
    answer = prompt("Extra rounds to run (0 to stop) [0]: ").strip()
    try:
        rounds = int(answer or "0")
    except ValueError:
        print(f"Not a number: {answer!r}; stopping.")
        return None
    if rounds < 1:
        return None

    print(f"\nCurrent consolidated feedback:\n{controller.latest_feedback or '(none)'}\n")
    edited = prompt("Edited feedback (empty keeps it): ").strip()
    return rounds, edited or None


def write_outputs(controller: RunController, output: Path, history_json: Optional[Path]) -> None:
    document = controller.final_document()
    if document is not None:
        output.write_text(document, encoding="utf-8")
        print(f"Final selected draft written to {output}")
    else:
        print("No selected draft to write.")

    if history_json is not None:
        payload = {
            "config": controller.config.model_dump(mode="json", by_alias=True) if controller.config else None,
            "history": [r.model_dump(mode="json", by_alias=True) for r in controller.history],
            "tokens": controller.accountant.to_dict(),
        }
        history_json.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        print(f"History written to {history_json}")


async def run_cli(
    args: argparse.Namespace,
    client: Optional[ModelClient] = None,
    prompt: Callable[[str], str] = input,
) -> int:
    """Run one loop (plus interactive batches). Returns the process exit code."""
    controller = RunController(client or OpenAICompatibleModelClient())
    try:
        result = await controller.start(build_config(args))
    except (ConfigurationInvalidError, OSError) as e:
        print(f"Invalid configuration: {e}")
        return 2
    print_result(controller, result)

    while args.interactive and controller.history and result.state in (RunState.PAUSED, RunState.FAILED):
        batch = ask_next_batch(controller, prompt)
        if batch is None:
            break
        rounds, feedback = batch
        try:
            result = await controller.continue_manually(rounds, feedback)
        except LoopForgeError as e:
            print(f"Cannot continue: {e}")
            break
        print_result(controller, result)

    write_outputs(controller, args.output, args.history_json)
    return 1 if result.state == RunState.FAILED else 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.WARNING if args.quiet else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(run_cli(args))


if __name__ == "__main__":
    sys.exit(main())

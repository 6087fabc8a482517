"""
CLI to generate the next segment of a story kept in a local YAML store.

Usage:
    python scripts/run_story_segment.py \
        --store story_store.yaml \
        --story-id s1 \
        --choice-index 0 \
        --output segment_response.yaml
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

from tqdm.auto import tqdm

# Ensure project root is on the Python path when running as a script.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from taleforge.common.config import Settings
from taleforge.pipeline import (
    InboundRequest,
    PipelineStage,
    StorySegmentPipeline,
    ValidationGate,
    YamlStoryGateway,
)

STAGE_LABELS = {
    PipelineStage.VALIDATING.value: "Validating request",
    PipelineStage.FETCHING_CONTEXT.value: "Fetching story context",
    PipelineStage.BUILDING_PROMPT.value: "Building prompt",
    PipelineStage.GENERATING_TEXT.value: "Generating story text",
    PipelineStage.PARSING_CHOICES.value: "Parsing choices",
    PipelineStage.BUILDING_IMAGE_PROMPT.value: "Building image prompt",
    PipelineStage.PERSISTING.value: "Saving segment",
    PipelineStage.TRIGGERING_IMAGE_GENERATION.value: "Triggering illustration",
    PipelineStage.RESPONDING.value: "Done",
}


class ProgressTracker:
    """
    Command-line progress updates for the segment pipeline.
    """

    def __init__(self) -> None:
        self._bar: tqdm | None = tqdm(total=len(STAGE_LABELS), desc="Segment", unit="stage")

    def __call__(self, stage: str, payload: Dict[str, Any]) -> None:
        match stage:
            case "fetching_context":
                choice = payload.get("choice_index")
                suffix = f" (continuing from choice {choice})" if choice is not None else ""
                self._advance(stage, f"Loading story {payload.get('story_id')}{suffix}...")
            case "generating_text":
                self._advance(stage, f"Prompt ready ({payload.get('prompt_length', 0)} chars).")
            case "parsing_choices":
                self._advance(stage, f"Text generated by {payload.get('provider')}.")
            case "responding":
                fallback = " (fallback provider)" if payload.get("fallback_triggered") else ""
                self._advance(stage, f"Segment {payload.get('segment_id')} saved{fallback}.")
                self.close()
            case "failed":
                self._write(f"Pipeline failed ({payload.get('code')}).")
                self.close()
            case _:
                self._advance(stage)

    def _advance(self, stage: str, message: str | None = None) -> None:
        if self._bar is not None:
            self._bar.set_description(STAGE_LABELS.get(stage, stage))
            self._bar.update(1)
        if message:
            self._write(message)

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None

    @staticmethod
    def _write(message: str) -> None:
        tqdm.write(message)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate the next TaleForge story segment.")
    parser.add_argument(
        "--store",
        required=True,
        help="YAML file holding stories, segments, and characters (updated in place).",
    )
    parser.add_argument("--story-id", required=True, help="Identifier of the story to continue.")
    parser.add_argument(
        "--choice-index",
        type=int,
        default=None,
        help="Index of the choice picked on the latest segment. Omit for the first segment.",
    )
    parser.add_argument(
        "--template-context",
        default=None,
        help="Optional YAML/JSON file with template overrides (theme, setting, quest...).",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Optional YAML/JSON settings file layered over the environment.",
    )
    parser.add_argument(
        "--token",
        default="local-cli",
        help="Bearer token forwarded to the illustration endpoint.",
    )
    parser.add_argument(
        "--output",
        default=None,
        help="Optional YAML file to store the full response.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


def load_mapping(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(text)
    elif suffix == ".json":
        data = json.loads(text)
    else:
        raise ValueError("Unsupported file format. Use YAML or JSON.")

    if not isinstance(data, dict):
        raise ValueError(f"{path} must deserialize to a mapping.")
    return data


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = (
        Settings.from_mapping(load_mapping(Path(args.config))) if args.config else Settings.from_env()
    )
    body: Dict[str, Any] = {"storyId": args.story_id}
    if args.choice_index is not None:
        body["choiceIndex"] = args.choice_index
    if args.template_context:
        body["templateContext"] = load_mapping(Path(args.template_context))

    pipeline = StorySegmentPipeline(
        gateway=YamlStoryGateway(args.store),
        settings=settings,
        validation_gate=ValidationGate(settings, require_persistence=False),
    )
    tracker = ProgressTracker()
    try:
        result = pipeline.handle(
            InboundRequest(
                method="POST",
                headers={"Authorization": f"Bearer {args.token}"},
                body=body,
            ),
            progress_callback=tracker,
        )
    finally:
        tracker.close()

    payload = result.body or {}
    if result.status != 200:
        print(f"Error {result.status}: {payload.get('error')}", file=sys.stderr)
        for detail in payload.get("details") or []:
            print(f"  - {detail}", file=sys.stderr)
        return 1

    segment = payload["segment"]
    print()
    print(segment["content"])
    print()
    for index, choice in enumerate(segment["choices"]):
        print(f"  [{index}] {choice['text']}")

    if args.output:
        output_path = Path(args.output)
        output_path.write_text(
            yaml.safe_dump(payload, sort_keys=False, allow_unicode=True),
            encoding="utf-8",
        )
        print(f"Saved response to {output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime
from typing import List, Optional

from dotenv import load_dotenv

from autoboard.config import load_config
from autoboard.errors import AutoboardError
from autoboard.pipeline import Pipeline
from autoboard.services import connectivity_probe, models_probe


def _log(message: str) -> None:
    ts = datetime.now().strftime("%H:%M:%S")
    print(f"[{ts}] {message}", file=sys.stderr)


def _check(pipeline: Pipeline) -> int:
    ok_all = True
    for label, cfg in (("llm", pipeline.cfg.llm), ("image", pipeline.cfg.image)):
        ok, msg = connectivity_probe(cfg.base_url)
        _log(f"{label}: {'connected' if ok else 'disconnected'} ({msg})")
        if ok and cfg.api_key:
            ok, msg = models_probe(cfg)
            _log(f"{label}: models {msg}")
        ok_all = ok_all and ok
    return 0 if ok_all else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autoboard", description="Turn a scene description into refined storyboard frames.")
    parser.add_argument("description", nargs="?", help="free-text scene description")
    parser.add_argument("--scene-id", help="existing scene to add a new shot batch to")
    parser.add_argument("--project", default="Untitled project", help="project name when creating a scene")
    parser.add_argument("--max-loops", type=int, default=None, help="generate/critique iterations per shot")
    parser.add_argument("--check", action="store_true", help="probe the model endpoints and exit")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    # Load environment from the working directory .env before reading config
    load_dotenv(os.path.join(os.getcwd(), ".env"))
    args = build_parser().parse_args(argv)
    pipeline = Pipeline(load_config(), on_log=_log)

    if args.check:
        return _check(pipeline)
    if not args.description:
        _log("A scene description is required")
        return 2

    scene_id = args.scene_id
    if not scene_id:
        project = pipeline.store.create_project(args.project)
        scene_id = pipeline.store.create_scene(project.id, "Scene 1").id
        _log(f"Created project {project.id} with scene {scene_id}")

    try:
        events = pipeline.run_auto_mode(scene_id, args.description, max_loops=args.max_loops)
    except AutoboardError as e:
        _log(f"Rejected: {e.message}")
        return 2

    status = 0
    for event in events:
        print(json.dumps(event.to_dict(), ensure_ascii=False), flush=True)
        if event.type == "error":
            status = 1
    return status


if __name__ == "__main__":
    sys.exit(main())

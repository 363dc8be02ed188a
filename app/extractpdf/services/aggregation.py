"""
Read-only project views: the folder-shaped aggregate of extracted records
and the completion progress counters.

Both views are rebuilt on demand from the latest run of each file.
"""

import logging
import re
from typing import Any

from ..models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    AggregatedFolderNode,
    ProcessingRunRecord,
    ProgressSnapshot,
    ProjectFileRecord,
)
from .repositories import Repositories

logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"(\d+)")


def natural_sort_key(value: str) -> tuple:
    """
    Sort key that orders embedded numbers numerically ("file2" < "file10").

    Odd positions of the split are the ``\\d+`` runs, so every key
    alternates str, int, str and two keys always compare position by position.
    """
    return tuple(
        int(token) if index % 2 else token.lower()
        for index, token in enumerate(_DIGITS.split(value))
    )


def count_records(output: Any) -> int:
    """
    Number of records in a run's aggregated output.

    A list counts its items, ``{"records": [...]}`` counts that list, any
    other object is one record and nothing is zero.
    """
    if output is None:
        return 0
    if isinstance(output, list):
        return len(output)
    if isinstance(output, dict):
        records = output.get("records")
        if isinstance(records, list):
            return len(records)
        return 1
    return 0


def split_path(original_name: str) -> list[str]:
    """Split an uploaded file's path into segments; backslashes count as separators."""
    return [segment for segment in original_name.replace("\\", "/").split("/") if segment]


def latest_runs_by_file(runs: list[ProcessingRunRecord]) -> dict[str, ProcessingRunRecord]:
    """Keep the most recently created run per file."""
    latest: dict[str, ProcessingRunRecord] = {}
    for run in runs:
        current = latest.get(run.file_id)
        if current is None or _created(run) > _created(current):
            latest[run.file_id] = run
    return latest


def _created(run: ProcessingRunRecord) -> float:
    return run.created_at.timestamp() if run.created_at else 0.0


class _Folder:
    def __init__(self, name: str, path: str):
        self.name = name
        self.path = path
        self.folders: dict[str, "_Folder"] = {}
        self.files: list[AggregatedFolderNode] = []

    def to_node(self) -> AggregatedFolderNode:
        children = _sorted_nodes(
            [folder.to_node() for folder in self.folders.values()] + self.files
        )
        return AggregatedFolderNode(
            name=self.name,
            path=self.path,
            type="folder",
            record_count=sum(child.record_count for child in children),
            children=children,
        )


def _sorted_nodes(nodes: list[AggregatedFolderNode]) -> list[AggregatedFolderNode]:
    return sorted(nodes, key=lambda node: (natural_sort_key(node.name), node.path))


def build_folder_tree(
    files: list[ProjectFileRecord],
    latest_runs: dict[str, ProcessingRunRecord],
) -> list[AggregatedFolderNode]:
    """
    Build the aggregate forest.

    Intermediate path segments become folders (merged by name at each
    level); the last segment is a file leaf for the file's latest run.
    Files without a run are left out.
    """
    root = _Folder("", "")

    for file in files:
        run = latest_runs.get(file.id)
        if run is None:
            continue

        segments = split_path(file.original_name) or [file.id]
        parent = root
        for depth, segment in enumerate(segments[:-1], start=1):
            folder = parent.folders.get(segment)
            if folder is None:
                folder = _Folder(segment, "/".join(segments[:depth]))
                parent.folders[segment] = folder
            parent = folder

        parent.files.append(
            AggregatedFolderNode(
                name=segments[-1],
                path="/".join(segments),
                type="file",
                record_count=count_records(run.aggregated_output),
                run_id=run.id,
                status=run.status,
                records=run.aggregated_output,
            )
        )

    return root.to_node().children or []


def aggregate_results_by_folder(repos: Repositories, project_id: str) -> list[AggregatedFolderNode]:
    files = repos.files.list_for_project(project_id)
    latest = latest_runs_by_file(repos.runs.list_for_project(project_id))
    nodes = build_folder_tree(files, latest)
    logger.debug("Aggregated %d file run(s) into %d top-level node(s)", len(latest), len(nodes))
    return nodes


def compute_progress(
    total_files: int,
    runs: list[ProcessingRunRecord],
) -> ProgressSnapshot:
    """
    Completion counters.

    ``completed_files`` counts files whose latest run is terminal;
    ``active_files`` counts files with any pending or running run.
    """
    latest = latest_runs_by_file(runs)
    completed = sum(1 for run in latest.values() if run.status in TERMINAL_STATUSES)
    active = len({run.file_id for run in runs if run.status in ACTIVE_STATUSES})
    return ProgressSnapshot(
        total_files=total_files,
        completed_files=completed,
        active_files=active,
    )


def get_processing_progress(repos: Repositories, project_id: str) -> ProgressSnapshot:
    return compute_progress(
        repos.files.count_for_project(project_id),
        repos.runs.list_for_project(project_id),
    )

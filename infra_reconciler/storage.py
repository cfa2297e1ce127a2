"""
Infra Reconciler - Run Storage

Handles persistence of runs: plans, summaries and per-resource results.
Uses JSON files - remembered remote state lives in the state store instead.
"""

from __future__ import annotations
import json
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional
import logging

from infra_reconciler.models import (
    ArtifactInfo,
    Plan,
    ResourceResult,
    RunStatus,
    RunSummary,
)

logger = logging.getLogger(__name__)


class StorageManager:
    """
    Manages storage of run artifacts.

    Directory structure:
    <base_path>/
        <run_id>/
            plan.json           - Reconciliation plan
            summary.json        - Run summary
            resources/          - One result per resource
    """

    TERMINAL_STATUSES = (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)

    def __init__(self, base_path: str = "./artifacts"):
        """Initialize storage manager with base path."""
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"Storage initialized at: {self.base_path.absolute()}")

    def _run_path(self, run_id: str) -> Path:
        return self.base_path / run_id

    def _ensure_run_dirs(self, run_id: str) -> Path:
        run_path = self._run_path(run_id)
        (run_path / "resources").mkdir(parents=True, exist_ok=True)
        return run_path

    def _write_json(self, path: Path, content: Any) -> None:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(content, f, indent=2, default=str)

    # =========================================================================
    # RUN MANAGEMENT
    # =========================================================================

    def create_run(self, run_id: str, destroy: bool = False) -> RunSummary:
        """Create a new run with initial state."""
        self._ensure_run_dirs(run_id)

        summary = RunSummary(
            run_id=run_id,
            status=RunStatus.CREATED,
            started_at=datetime.utcnow(),
            destroy=destroy,
        )

        self.save_summary(run_id, summary)
        logger.info(f"Created run: {run_id}")
        return summary

    def run_exists(self, run_id: str) -> bool:
        return self._run_path(run_id).exists()

    def get_all_runs(self) -> List[str]:
        if not self.base_path.exists():
            return []
        return sorted(
            d.name for d in self.base_path.iterdir()
            if d.is_dir() and not d.name.startswith(".")
        )

    def delete_run(self, run_id: str) -> bool:
        """Delete a run and all its artifacts."""
        run_path = self._run_path(run_id)
        if run_path.exists():
            shutil.rmtree(run_path)
            logger.info(f"Deleted run: {run_id}")
            return True
        return False

    # =========================================================================
    # SUMMARY MANAGEMENT
    # =========================================================================

    def save_summary(self, run_id: str, summary: RunSummary) -> str:
        run_path = self._ensure_run_dirs(run_id)
        summary_path = run_path / "summary.json"
        self._write_json(summary_path, summary.model_dump(mode="json"))
        logger.debug(f"Saved summary for run: {run_id}")
        return str(summary_path)

    def load_summary(self, run_id: str) -> Optional[RunSummary]:
        summary_path = self._run_path(run_id) / "summary.json"
        if not summary_path.exists():
            return None
        with open(summary_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return RunSummary.model_validate(data)

    def update_summary_status(
        self,
        run_id: str,
        status: RunStatus,
        error_message: Optional[str] = None,
    ) -> None:
        """Update run status in summary."""
        summary = self.load_summary(run_id)
        if summary is None:
            return
        summary.status = status
        if error_message:
            summary.error_message = error_message
        if status in self.TERMINAL_STATUSES:
            summary.completed_at = datetime.utcnow()
            if summary.started_at:
                delta = summary.completed_at - summary.started_at
                summary.duration_seconds = delta.total_seconds()
        self.save_summary(run_id, summary)

    # =========================================================================
    # PLAN
    # =========================================================================

    def save_plan(self, run_id: str, plan: Plan) -> str:
        """Save plan and return file path."""
        run_path = self._ensure_run_dirs(run_id)
        plan_path = run_path / "plan.json"
        self._write_json(plan_path, plan.model_dump(mode="json"))
        logger.info(f"Saved plan for run: {run_id}")
        return str(plan_path)

    def load_plan(self, run_id: str) -> Optional[Plan]:
        plan_path = self._run_path(run_id) / "plan.json"
        if not plan_path.exists():
            return None
        with open(plan_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return Plan.model_validate(data)

    # =========================================================================
    # RESOURCE RESULTS
    # =========================================================================

    def save_resource_result(self, run_id: str, result: ResourceResult) -> str:
        """
        Save a resource result as artifact.

        Args:
            run_id: Run identifier
            result: Resource result to save

        Returns:
            Path to saved artifact
        """
        run_path = self._ensure_run_dirs(run_id)
        safe_name = "".join(c if c.isalnum() or c in "-_." else "_" for c in result.resource)
        artifact_path = run_path / "resources" / f"{safe_name}.json"
        self._write_json(artifact_path, result.model_dump(mode="json"))
        logger.debug(f"Saved resource result: {artifact_path}")
        return str(artifact_path)

    # =========================================================================
    # ARTIFACT LISTING
    # =========================================================================

    def list_artifacts(self, run_id: str) -> List[ArtifactInfo]:
        run_path = self._run_path(run_id)
        if not run_path.exists():
            return []

        artifacts = []
        for item in run_path.rglob("*.json"):
            rel_path = item.relative_to(run_path).as_posix()
            stat = item.stat()
            artifacts.append(
                ArtifactInfo(
                    name=item.name,
                    path=rel_path,
                    type=self._get_artifact_type(rel_path),
                    size_bytes=stat.st_size,
                    created_at=datetime.fromtimestamp(stat.st_mtime),
                )
            )
        return sorted(artifacts, key=lambda a: a.path)

    def _get_artifact_type(self, rel_path: str) -> str:
        if rel_path.startswith("resources/"):
            return "resource"
        return {"plan.json": "plan", "summary.json": "summary"}.get(rel_path, "other")

    def get_artifact_content(self, run_id: str, artifact_path: str) -> Optional[Any]:
        """Get content of a specific artifact by relative path."""
        run_path = self._run_path(run_id).resolve()
        full_path = (run_path / artifact_path).resolve()
        if run_path not in full_path.parents or not full_path.is_file():
            return None

        with open(full_path, "r", encoding="utf-8") as f:
            if full_path.suffix == ".json":
                return json.load(f)
            return f.read()

"""On-disk persistence for the convergence loop.

Provides:
    - FileCodeStore: write project files, per-run write-once backups, restore
    - ArtifactWriter: per-iteration screenshots and heatmaps, run summary

Layout under the project directory:

    .converge/
        backups/
            run-1718000000000/
                1/
                    manifest.yaml    # iteration, {relative path: sha256}
                    files/src/app/page.tsx
                2/ ...
        reports/
            run-1718000000000/
                iteration-1.png
                heatmap-1.png
                ...
                summary.yaml

Backups are namespaced by run id; iteration numbers restart at 1 every run,
so one run never sees another run's backup N. start_run() selects the
namespace and discards whatever a previous run left under the same id.

Backup N holds exactly the code that was scored in round N. Backups are
write-once: creating an existing one raises FileExistsError. They are built
in a temporary directory and renamed into place, so a crash never leaves a
half-written backup that has_backup() would report.

All file writes go through src.utils.fs atomic helpers.
"""

import logging
import shutil
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from ..utils import fs, hashing
from ..utils.validators import flatten_config

logger = logging.getLogger(__name__)

STATE_DIR = ".converge"
MANIFEST = "manifest.yaml"


class FileCodeStore:
    """File-system code store rooted at ``project_dir``.

    Parameters
    ----------
    project_dir : Union[str, Path]
        Project root; every code path is relative to it
    backup_root : Union[str, Path], optional
        Directory holding one backup namespace per run, default
        ``{project_dir}/.converge/backups``
    run_id : str, optional
        Initial backup namespace, default ``run-{epoch_ms}``; the controller
        switches it to its own run id via start_run()

    Notes
    -----
    Paths that resolve outside the project (absolute paths, ``..``) raise
    ValueError before anything is written.
    """

    def __init__(
        self,
        project_dir: Union[str, Path],
        backup_root: Optional[Union[str, Path]] = None,
        run_id: Optional[str] = None,
    ):
        self.project_dir = Path(project_dir).resolve()
        self.backup_root = Path(backup_root) if backup_root else self.project_dir / STATE_DIR / "backups"
        self.start_run(run_id or f"run-{int(time.time() * 1000)}")

    def start_run(self, run_id: str) -> Path:
        """Scope subsequent backups to ``{backup_root}/{run_id}``.

        Backups already stored under the same run id belong to an earlier
        run and are deleted, so has_backup() only reports this run's.

        Returns
        -------
        Path
            The run's backup directory (created lazily by backup_files)
        """
        if not run_id or Path(run_id).name != run_id or run_id in (".", ".."):
            raise ValueError(f"Invalid run id: {run_id!r}")
        run_dir = self.backup_root / run_id
        if run_dir.exists():
            logger.warning(f"Discarding stale backups in {run_dir}")
            shutil.rmtree(run_dir)
        self.run_id = run_id
        self.run_dir = run_dir
        return run_dir

    def _resolve(self, rel_path: str) -> Path:
        target = (self.project_dir / rel_path).resolve()
        if target != self.project_dir and self.project_dir not in target.parents:
            raise ValueError(f"Path escapes project directory: {rel_path!r}")
        if target == self.project_dir:
            raise ValueError(f"Path refers to the project directory itself: {rel_path!r}")
        return target

    def _backup_dir(self, iteration: int) -> Path:
        return self.run_dir / str(int(iteration))

    # ------------------------------------------------------------------
    # Current code
    # ------------------------------------------------------------------

    def write_files(self, code: Mapping[str, str]) -> List[Path]:
        """Atomically write every file of ``code``; returns written paths."""
        targets = [(self._resolve(rel), content) for rel, content in code.items()]
        written = []
        for target, content in targets:
            fs.atomic_write_text(target, content)
            written.append(target)
        logger.debug(f"Wrote {len(written)} file(s) under {self.project_dir}")
        return written

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def backup_files(self, paths: Iterable[str], iteration: int) -> Path:
        """Snapshot the current contents of ``paths`` as backup ``iteration``.

        Returns
        -------
        Path
            Backup directory

        Raises
        ------
        FileExistsError
            If backup ``iteration`` already exists (backups are write-once)
        ValueError
            If a path escapes the project directory
        """
        final_dir = self._backup_dir(iteration)
        if final_dir.exists():
            raise FileExistsError(f"Backup {iteration} already exists: {final_dir}")

        sources = [(rel, self._resolve(rel)) for rel in paths]
        tmp_dir = self.run_dir / f".{int(iteration)}.tmp"
        if tmp_dir.exists():
            shutil.rmtree(tmp_dir)

        manifest: Dict[str, str] = {}
        try:
            for rel, source in sources:
                if not source.is_file():
                    logger.warning(f"Backup {iteration}: skipping missing file {rel}")
                    continue
                dest = tmp_dir / "files" / rel
                fs.ensure_dir(dest.parent)
                shutil.copy2(source, dest)
                manifest[rel] = hashing.sha256_file(dest)

            fs.atomic_yaml_dump(
                {"iteration": int(iteration), "created": time.time(), "files": manifest},
                tmp_dir / MANIFEST,
            )
            tmp_dir.rename(final_dir)
        except BaseException:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise

        logger.info(f"Backed up {len(manifest)} file(s) as iteration {iteration}")
        return final_dir

    def has_backup(self, iteration: int) -> bool:
        return (self._backup_dir(iteration) / MANIFEST).is_file()

    def load_backup(self, iteration: int) -> Dict[str, str]:
        """Read backup ``iteration`` without touching the project files.

        Raises
        ------
        FileNotFoundError
            If the backup does not exist
        ValueError
            If a file's hash no longer matches the manifest
        """
        backup_dir = self._backup_dir(iteration)
        if not self.has_backup(iteration):
            raise FileNotFoundError(f"Backup {iteration} not found in {self.run_dir}")

        manifest = fs.load_yaml(backup_dir / MANIFEST).get("files", {}) or {}
        code = {}
        for rel, expected in manifest.items():
            stored = backup_dir / "files" / rel
            if not hashing.verify_file_hash(stored, expected):
                raise ValueError(f"Backup {iteration} is corrupted: hash mismatch for {rel}")
            code[rel] = stored.read_text(encoding="utf-8")
        return code

    def restore_backup(self, iteration: int) -> Dict[str, str]:
        """Write backup ``iteration`` back into the project and return its code."""
        code = self.load_backup(iteration)
        self.write_files(code)
        logger.info(f"Restored {len(code)} file(s) from backup {iteration}")
        return code


class ArtifactWriter:
    """Write-only per-run report directory.

    Parameters
    ----------
    project_dir : Union[str, Path]
        Project root
    run_id : str, optional
        Directory name, default ``run-{epoch_ms}``
    """

    def __init__(self, project_dir: Union[str, Path], run_id: Optional[str] = None):
        run_id = run_id or f"run-{int(time.time() * 1000)}"
        self.report_dir = Path(project_dir) / STATE_DIR / "reports" / run_id

    @property
    def run_id(self) -> str:
        return self.report_dir.name

    def save_iteration(self, iteration: int, screenshot: Any, heatmap: Any) -> Dict[str, Path]:
        """Save ``iteration-{n}.png`` and ``heatmap-{n}.png``."""
        paths = {
            "screenshot": self.report_dir / f"iteration-{iteration}.png",
            "heatmap": self.report_dir / f"heatmap-{iteration}.png",
        }
        fs.atomic_save_image(screenshot, paths["screenshot"])
        fs.atomic_save_image(heatmap, paths["heatmap"])
        return paths

    def write_summary(self, result: Any, config: Any = None, design: Any = None) -> Path:
        """Write ``summary.yaml`` for a finished run (LoopResult).

        ``design`` (the target image) adds its pixel hash so runs against
        the same design can be matched regardless of how the file was encoded.
        """
        summary = {
            "run": self.run_id,
            "stop_reason": result.stop_reason.value,
            "final_score": round(float(result.final_score), 6),
            "total_iterations": int(result.total_iterations),
            "failed_rounds": int(result.failed_rounds),
            "elapsed_ms": int(result.elapsed_ms),
            "final_code_sha256": hashing.sha256_code(result.final_code),
            "files": sorted(result.final_code),
            "history": [
                {
                    "iteration": r.iteration,
                    "score": round(float(r.score), 6),
                    "strategy": r.strategy.value,
                    "category": r.category.value,
                    "elapsed_ms": r.elapsed_ms,
                    "files_modified": list(r.files_modified),
                }
                for r in result.history
            ],
        }
        if design is not None:
            summary["design_sha256"] = hashing.sha256_image(design)
        if config is not None:
            summary["config"] = flatten_config(config)

        path = self.report_dir / "summary.yaml"
        fs.atomic_yaml_dump(summary, path)
        return path

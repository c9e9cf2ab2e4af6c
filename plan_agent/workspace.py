"""
Workspace selection.

A workspace is a directory an agent run works in. By default it is the
current repository. --workspace NAME, --auto-workspace and --new-workspace
select or create git worktrees under the configured workspace root.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import shutil
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from .config import AgentConfig, ExecutionOptions
from .output import error, log, verbose_log
from .workspace_lock import WorkspaceLock


class WorkspaceError(Exception):
    """A workspace could not be created or selected."""


@dataclass
class WorkspaceSelection:
    path: str
    plan_file: str
    name: Optional[str] = None
    created: bool = False


def get_workspace_path(repo_root: str, config: AgentConfig, name: str) -> Path:
    safe_name = name.replace(" ", "-").replace("/", "-").lower()[:40]
    return Path(repo_root) / config.workspace_root / safe_name


def list_workspaces(repo_root: str, config: AgentConfig) -> list[Path]:
    root = Path(repo_root) / config.workspace_root
    if not root.is_dir():
        return []
    return sorted(p for p in root.iterdir() if p.is_dir())


def create_workspace(repo_root: str, workspace_path: Path, branch_name: str) -> Path:
    """Create a git worktree for a workspace on a new branch from HEAD."""
    workspace_path.parent.mkdir(parents=True, exist_ok=True)

    # Prune any stale worktree references
    subprocess.run(
        ["git", "worktree", "prune"],
        cwd=repo_root,
        capture_output=True,
        text=True,
        check=False
    )

    try:
        subprocess.run(
            ["git", "worktree", "add", "-b", branch_name, str(workspace_path)],
            cwd=repo_root,
            capture_output=True,
            text=True,
            check=True
        )
    except subprocess.CalledProcessError as e:
        error(f"Failed to create workspace: {e.stderr}")
        raise WorkspaceError(f"Could not create workspace at {workspace_path}: {e.stderr.strip()}")

    verbose_log(f"Created workspace at {workspace_path} on branch {branch_name}", "WORKSPACE")
    return workspace_path


def _new_workspace_name(plan_id) -> str:
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    return f"plan-{plan_id}-{stamp}" if plan_id is not None else f"ws-{stamp}"


def _plan_file_in_workspace(repo_root: str, plan_file: str, workspace_path: Path) -> str:
    """Map the plan file into the workspace, copying it in if git did not."""
    try:
        relative = Path(plan_file).resolve().relative_to(Path(repo_root).resolve())
    except ValueError:
        # Plan lives outside the repository; use it in place
        return plan_file
    target = workspace_path / relative
    if not target.exists():
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(plan_file, target)
        verbose_log(f"Copied plan file into workspace: {target}", "WORKSPACE")
    return str(target)


def setup_workspace(
    options: ExecutionOptions,
    config: AgentConfig,
    repo_root: str,
    plan_file: str,
    plan_id=None,
) -> WorkspaceSelection:
    """Pick the directory this run works in."""
    if not (options.workspace or options.auto_workspace or options.new_workspace):
        return WorkspaceSelection(path=repo_root, plan_file=plan_file)

    name: Optional[str] = None
    if options.workspace:
        path = get_workspace_path(repo_root, config, options.workspace)
        locked = path.exists() and WorkspaceLock.is_locked(str(path), config.lock_stale_hours)
        if locked and options.new_workspace:
            log(f"Workspace {options.workspace} is locked; creating a new workspace")
        elif path.exists():
            log(f"Using workspace {path}")
            return WorkspaceSelection(
                path=str(path),
                plan_file=_plan_file_in_workspace(repo_root, plan_file, path),
                name=options.workspace,
            )
        else:
            name = options.workspace

    if options.auto_workspace and name is None and not options.new_workspace:
        for candidate in list_workspaces(repo_root, config):
            if not WorkspaceLock.is_locked(str(candidate), config.lock_stale_hours):
                log(f"Auto-selected workspace {candidate}")
                return WorkspaceSelection(
                    path=str(candidate),
                    plan_file=_plan_file_in_workspace(repo_root, plan_file, candidate),
                    name=candidate.name,
                )
        verbose_log("No unlocked workspace available; creating one", "WORKSPACE")

    name = name or _new_workspace_name(plan_id)
    path = get_workspace_path(repo_root, config, name)
    create_workspace(repo_root, path, f"plan-agent/{path.name}")
    log(f"Created workspace {path}")
    return WorkspaceSelection(
        path=str(path),
        plan_file=_plan_file_in_workspace(repo_root, plan_file, path),
        name=name,
        created=True,
    )

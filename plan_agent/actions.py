"""
Post-apply commands and git helpers.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
import subprocess
from typing import Iterable, Optional

from .config import PostApplyCommand
from .output import error, log, verbose_log, warn, write_stderr, write_stdout
from .workspace_lock import LOCK_FILE_NAME

EXCLUDE_LOCK_PATHSPEC = f":(exclude){LOCK_FILE_NAME}"


def execute_post_apply_command(command: PostApplyCommand, base_dir: str) -> bool:
    """Run one post-apply command through the shell.

    Returns True on success, or on failure when allow_failure is set.
    """
    cwd = base_dir
    if command.working_directory:
        cwd = os.path.join(base_dir, command.working_directory)
    env = os.environ.copy()
    env.update(command.env)

    log(f"Running post-apply command: {command.title}")
    verbose_log(f"Command: {command.command} (cwd: {cwd})", "POST-APPLY")
    try:
        result = subprocess.run(
            command.command,
            shell=True,
            cwd=cwd,
            env=env,
            capture_output=True,
            text=True,
        )
    except OSError as e:
        error(f"Post-apply command '{command.title}' could not start: {e}")
        return command.allow_failure

    failed = result.returncode != 0
    if not command.hide_output or failed:
        if result.stdout:
            write_stdout(result.stdout)
        if result.stderr:
            write_stderr(result.stderr)

    if not failed:
        return True
    if command.allow_failure:
        warn(f"Post-apply command '{command.title}' failed with exit code {result.returncode} (allowed)")
        return True
    error(f"Post-apply command '{command.title}' failed with exit code {result.returncode}")
    return False


def _git(args: list[str], cwd: Optional[str]) -> Optional[str]:
    """Run a git command, returning stdout, or None if it failed."""
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
    except (subprocess.CalledProcessError, OSError) as e:
        verbose_log(f"git {' '.join(args)} failed: {e}", "GIT")
        return None
    return result.stdout


def get_git_root(path: Optional[str] = None) -> Optional[str]:
    out = _git(["rev-parse", "--show-toplevel"], cwd=path)
    return out.strip() if out else None


def get_current_commit(cwd: Optional[str] = None) -> Optional[str]:
    out = _git(["rev-parse", "HEAD"], cwd=cwd)
    return out.strip() if out else None


def get_current_branch(cwd: Optional[str] = None) -> Optional[str]:
    out = _git(["branch", "--show-current"], cwd=cwd)
    return out.strip() or None if out else None


def get_trunk_branch(cwd: Optional[str] = None) -> str:
    """Return main or master, whichever exists locally (main if neither)."""
    out = _git(["branch", "--list", "main", "master"], cwd=cwd) or ""
    names = [line.replace("*", "").strip() for line in out.splitlines() if line.strip()]
    return names[0] if names else "main"


def _is_excluded(path: str, exclude_paths: Iterable[str]) -> bool:
    if os.path.basename(path) == LOCK_FILE_NAME:
        return True
    normalized = os.path.normpath(path)
    for excluded in exclude_paths:
        excluded = os.path.normpath(excluded)
        if normalized == excluded or normalized.startswith(excluded + os.sep):
            return True
    return False


def _collect_paths(lines: Iterable[str], exclude_paths: Iterable[str] = ()) -> list[str]:
    exclude_paths = list(exclude_paths)
    files: list[str] = []
    for path in lines:
        path = path.strip()
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        if path and path not in files and not _is_excluded(path, exclude_paths):
            files.append(path)
    return files


def get_changed_files(cwd: Optional[str] = None, since_commit: Optional[str] = None) -> list[str]:
    """List files changed in the working tree, or since the given commit.

    The workspace lock file is never reported.
    """
    if since_commit:
        diff = _git(["diff", "--name-only", since_commit, "--", ".", EXCLUDE_LOCK_PATHSPEC], cwd=cwd) or ""
        untracked = _git(["ls-files", "--others", "--exclude-standard"], cwd=cwd) or ""
        candidates = diff.splitlines() + untracked.splitlines()
    else:
        status = _git(["status", "--porcelain"], cwd=cwd) or ""
        candidates = [line[3:] for line in status.splitlines() if len(line) > 3]
    return _collect_paths(candidates)


def get_changed_files_on_branch(
    cwd: Optional[str] = None,
    base_branch: Optional[str] = None,
    exclude_paths: Iterable[str] = (),
) -> list[str]:
    """List files changed on this branch relative to base_branch.

    Covers commits since the branch point, uncommitted edits and untracked
    files. Paths are relative to the git root; anything under exclude_paths
    (and the workspace lock file) is left out.
    """
    base = base_branch or get_trunk_branch(cwd)
    merge_base = _git(["merge-base", base, "HEAD"], cwd=cwd)
    since = merge_base.strip() if merge_base else base
    diff = _git(["diff", "--name-only", since, "--", ".", EXCLUDE_LOCK_PATHSPEC], cwd=cwd)
    if diff is None:
        verbose_log(f"Could not diff against {base}", "GIT")
        return []
    untracked = _git(["ls-files", "--others", "--exclude-standard"], cwd=cwd) or ""
    return _collect_paths(diff.splitlines() + untracked.splitlines(), exclude_paths)


def commit_all(message: str, cwd: Optional[str] = None) -> bool:
    """Stage and commit everything except the workspace lock.

    Returns False if nothing was committed.
    """
    try:
        subprocess.run(
            ["git", "add", "-A", "--", ".", EXCLUDE_LOCK_PATHSPEC],
            cwd=cwd,
            capture_output=True,
            check=True,
        )
        staged = subprocess.run(["git", "diff", "--cached", "--quiet"], cwd=cwd, capture_output=True)
        if staged.returncode == 0:
            verbose_log("Nothing to commit", "GIT")
            return False
        subprocess.run(["git", "commit", "-m", message], cwd=cwd, capture_output=True, check=True)
        log(f"[Committed: {message}]")
        return True
    except (subprocess.CalledProcessError, OSError) as e:
        warn(f"Failed to commit changes: {e}")
        return False

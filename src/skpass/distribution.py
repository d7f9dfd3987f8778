"""
Distribution Channel: ship the ciphertext tree over git.

The store directory is a git work tree. Authoring machines push, bot
servers pull. History stays linear: a push onto a remote that moved
is a ConflictError, a pull that cannot fast-forward is a DivergedError.
Nothing is ever merged or force-pushed automatically; last-writer-wins
would silently drop a secret somebody else just rotated.

Only ciphertext and policy files travel. A replica clones the whole
tree, and entries outside its scopes stay unreadable ciphertext.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from .errors import ConflictError, DistributionError, DivergedError
from .models import IdentityKey
from .recipients import RecipientResolver

logger = logging.getLogger("skpass.distribution")

CommitId = str


class ChannelStatus(BaseModel):
    """Where the local tree stands relative to its remote."""

    head: Optional[str] = None
    remote_head: Optional[str] = None
    ahead: int = 0
    behind: int = 0
    dirty: bool = False


class LocalReplica(BaseModel):
    """A cloned store as seen by one replica identity."""

    path: Path
    identity: str
    commit: Optional[str] = None
    readable_scopes: list[str] = Field(default_factory=list)
    foreign_scopes: list[str] = Field(default_factory=list)


class GitChannel:
    """Push/pull a store work tree to a single git remote.

    Args:
        work_tree: Store directory.
        remote: Remote name.
        branch: Branch carrying the store.
        author_name: Committer name for store commits.
        author_email: Committer email for store commits.
    """

    def __init__(
        self,
        work_tree: Path,
        remote: str = "origin",
        branch: str = "main",
        author_name: str = "skpass",
        author_email: str = "skpass@localhost",
    ) -> None:
        self.work_tree = work_tree
        self.remote = remote
        self.branch = branch
        self.author_name = author_name
        self.author_email = author_email

    @property
    def remote_ref(self) -> str:
        return f"{self.remote}/{self.branch}"

    def _git(
        self,
        *args: str,
        check: bool = True,
        cwd: Optional[Path] = None,
    ) -> subprocess.CompletedProcess:
        cmd = ["git", *args]
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                cwd=str(cwd or self.work_tree),
                env=env,
            )
        except FileNotFoundError as exc:
            raise DistributionError("git is not installed") from exc
        if check and result.returncode != 0:
            raise DistributionError(
                f"git {' '.join(args)} failed: {result.stderr.strip()}"
            )
        return result

    # -------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------

    def is_repo(self) -> bool:
        return (self.work_tree / ".git").exists()

    def init_remote(self, url: Optional[str] = None) -> None:
        """Make the store a git work tree and point it at ``url``.

        Idempotent. An existing, different remote URL is left alone and
        reported, never overwritten.
        """
        self.work_tree.mkdir(parents=True, exist_ok=True)
        if not self.is_repo():
            self._git("init", "-b", self.branch)
            logger.info("Initialized git in %s", self.work_tree)

        if not url:
            return
        current = self._git("remote", "get-url", self.remote, check=False)
        if current.returncode != 0:
            self._git("remote", "add", self.remote, url)
            logger.info("Remote %s added: %s", self.remote, url)
        elif current.stdout.strip() != url:
            logger.warning(
                "Remote %s already set to %s (expected %s); leaving as-is",
                self.remote, current.stdout.strip(), url,
            )

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    def head(self) -> Optional[CommitId]:
        result = self._git("rev-parse", "--verify", "--quiet", "HEAD", check=False)
        return result.stdout.strip() or None

    def fetch(self) -> Optional[CommitId]:
        """Fetch the remote branch; None if the remote has no such branch yet."""
        listed = self._git("ls-remote", "--heads", self.remote, self.branch)
        if not listed.stdout.strip():
            return None
        self._git("fetch", self.remote, self.branch)
        result = self._git("rev-parse", "--verify", "--quiet", self.remote_ref, check=False)
        return result.stdout.strip() or None

    def _is_ancestor(self, ancestor: str, descendant: str) -> bool:
        result = self._git("merge-base", "--is-ancestor", ancestor, descendant, check=False)
        if result.returncode not in (0, 1):
            raise DistributionError(f"git merge-base failed: {result.stderr.strip()}")
        return result.returncode == 0

    def _dirty(self) -> bool:
        return bool(self._git("status", "--porcelain").stdout.strip())

    def _require_repo(self) -> None:
        if not self.is_repo():
            raise DistributionError(
                f"{self.work_tree} is not a git work tree; run 'skpass init --remote URL'"
            )

    # -------------------------------------------------------------------
    # Push / pull
    # -------------------------------------------------------------------

    def commit_all(self, message: Optional[str] = None) -> Optional[CommitId]:
        """Stage every change as one commit. Returns the new HEAD, or None if clean."""
        self._require_repo()
        self._git("add", "-A")
        staged = self._git("diff", "--cached", "--quiet", check=False)
        if staged.returncode == 0:
            return None
        msg = message or f"skpass: update {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')}"
        self._git(
            "-c", f"user.name={self.author_name}",
            "-c", f"user.email={self.author_email}",
            "-c", "commit.gpgsign=false",
            "commit", "-q", "-m", msg,
        )
        return self.head()

    def push(self, message: Optional[str] = None) -> CommitId:
        """Commit local changes and push them; never merges, never forces.

        Returns:
            The pushed commit id (HEAD when there was nothing new).

        Raises:
            ConflictError: If the remote has commits the local tree lacks.
        """
        self._require_repo()
        created = self.commit_all(message)
        head = self.head()
        if head is None:
            raise DistributionError("Nothing to push: the store has no commits yet")

        remote_head = self.fetch()
        if remote_head is not None and not self._is_ancestor(remote_head, head):
            raise ConflictError(
                f"{self.remote_ref} has diverged (remote {remote_head[:12]}, local {head[:12]}); "
                "pull first and rebase local commits manually"
            )
        if remote_head == head:
            logger.info("Remote already at %s; nothing to push", head[:12])
            return head

        result = self._git("push", self.remote, f"HEAD:refs/heads/{self.branch}", check=False)
        if result.returncode != 0:
            stderr = result.stderr.strip()
            if any(s in stderr for s in ("rejected", "non-fast-forward", "fetch first")):
                raise ConflictError(f"Push to {self.remote_ref} rejected: {stderr}")
            raise DistributionError(f"Push to {self.remote_ref} failed: {stderr}")

        logger.info(
            "Pushed %s to %s%s", head[:12], self.remote_ref,
            " (new commit)" if created else "",
        )
        return head

    def pull(self) -> Optional[CommitId]:
        """Fast-forward to the remote branch.

        Returns:
            The resulting HEAD (None for an empty store and empty remote).

        Raises:
            DivergedError: If local history or local changes block a fast-forward.
        """
        self._require_repo()
        remote_head = self.fetch()
        head = self.head()
        if remote_head is None:
            logger.info("Remote %s is empty; nothing to pull", self.remote_ref)
            return head

        if head is not None:
            if self._is_ancestor(remote_head, head):
                return head
            if not self._is_ancestor(head, remote_head):
                raise DivergedError(
                    f"Local {head[:12]} and {self.remote_ref} {remote_head[:12]} have diverged; "
                    "push is blocked until local commits are rebased"
                )

        result = self._git("merge", "--ff-only", "-q", self.remote_ref, check=False)
        if result.returncode != 0:
            raise DivergedError(
                f"Cannot fast-forward to {self.remote_ref}: {result.stderr.strip()}"
            )
        new_head = self.head()
        logger.info("Fast-forwarded to %s", (new_head or "")[:12])
        return new_head

    def status(self) -> ChannelStatus:
        """Ahead/behind counts against the remote plus work tree cleanliness."""
        self._require_repo()
        head = self.head()
        remote_head = self.fetch() if self.has_remote() else None
        status = ChannelStatus(head=head, remote_head=remote_head, dirty=self._dirty())
        if head and remote_head:
            counts = self._git(
                "rev-list", "--left-right", "--count", f"{head}...{remote_head}"
            ).stdout.split()
            status.ahead, status.behind = int(counts[0]), int(counts[1])
        elif head:
            status.ahead = int(self._git("rev-list", "--count", head).stdout.strip())
        return status

    def has_remote(self) -> bool:
        return self._git("remote", "get-url", self.remote, check=False).returncode == 0

    # -------------------------------------------------------------------
    # Replicas
    # -------------------------------------------------------------------

    def clone_scoped(
        self,
        url: str,
        identity: IdentityKey,
        force: bool = False,
    ) -> LocalReplica:
        """Clone the store into this channel's work tree for ``identity``.

        An existing clone is fast-forwarded instead. The replica holds every
        entry as ciphertext; only scopes listing ``identity`` are readable.

        Args:
            url: Remote URL.
            identity: The replica's own identity.
            force: Replace an existing non-git directory at the destination.

        Raises:
            DistributionError: If the destination exists and is not a clone.
        """
        dest = self.work_tree
        if self.is_repo():
            logger.info("Replica already cloned at %s; pulling", dest)
            self.pull()
        else:
            if dest.exists() and any(dest.iterdir()):
                if not force:
                    raise DistributionError(
                        f"{dest} exists and is not a git clone; use --force to replace it"
                    )
                logger.warning("Removing stale %s (not a git clone)", dest)
                shutil.rmtree(dest)
            dest.parent.mkdir(parents=True, exist_ok=True)
            self._git(
                "clone", "-q", "--origin", self.remote, url, str(dest),
                cwd=dest.parent,
            )
            current = self._git("rev-parse", "--abbrev-ref", "HEAD", check=False).stdout.strip()
            if current != self.branch and self.fetch() is not None:
                # remote HEAD may point elsewhere (or nowhere)
                self._git("checkout", "-q", "-B", self.branch, "--track", self.remote_ref)
            logger.info("Cloned %s into %s", url, dest)
        os.chmod(dest, 0o700)

        resolver = RecipientResolver(dest)
        readable, foreign = [], []
        for scope in resolver.scopes():
            policy = resolver.read_policy(scope)
            (readable if policy and identity.fingerprint in policy else foreign).append(scope)

        replica = LocalReplica(
            path=dest,
            identity=identity.fingerprint,
            commit=self.head(),
            readable_scopes=readable,
            foreign_scopes=foreign,
        )
        logger.info(
            "Replica %s: %d readable scopes, %d ciphertext-only",
            identity.identity.display, len(readable), len(foreign),
        )
        return replica

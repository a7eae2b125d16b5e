"""
hrgate Ref Transport

Carries signal payloads over a repository's git remote.

Each publish writes the payload as a single blob (``hr-signal.json``) inside
a tree inside a commit with no parents, then force-moves a namespaced ref to
that commit. Payloads are not a history: each publish replaces the previous
state wholesale and the ref never grows.

Readers fetch that one ref, never the default branch.
"""

import base64
import os
import re
import secrets
import subprocess
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import requests

DEFAULT_NAMESPACE = "hrgate/hr"
STATS_NAMESPACE = "hrgate/stats"
PAYLOAD_FILENAME = "hr-signal.json"
DEFAULT_TIMEOUT_SECONDS = 10
DEFAULT_GITHUB_API_URL = "https://api.github.com"

# One ref path component: no slashes, no leading dot, no "..", no control or special chars
_REF_COMPONENT = re.compile(r"^(?!\.)(?!.*\.\.)(?!.*\.lock$)[A-Za-z0-9._-]+(?<!\.)$")


class TransportError(Exception):
    """The transport could not complete the operation (network, timeout, bad response)."""


class SignalNotFound(TransportError):
    """The ref, or the payload file inside it, does not exist."""


def ref_name_for(subject_key: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    """
    Derive the signal ref for a subject.

    Args:
        subject_key: Subject identity, must be a single valid ref component
        namespace: Ref namespace below ``refs/``

    Returns:
        Full ref name, e.g. ``refs/hrgate/hr/octocat``
    """
    if not subject_key or not _REF_COMPONENT.match(subject_key):
        raise ValueError(f"subject_key is not a valid ref component: {subject_key!r}")
    return f"refs/{namespace.strip('/')}/{subject_key}"


class RefTransport(ABC):
    """Publish/fetch interface for a single repository."""

    @abstractmethod
    def publish(self, ref_name: str, payload: bytes, filename: str = PAYLOAD_FILENAME) -> str:
        """
        Replace the ref's contents with a parentless commit holding ``payload``.

        Returns:
            The new commit SHA

        Raises:
            TransportError: If the publish did not complete
        """

    @abstractmethod
    def fetch(self, ref_name: str, filename: str = PAYLOAD_FILENAME) -> bytes:
        """
        Read the payload file from the ref.

        Raises:
            SignalNotFound: If the ref or file is absent
            TransportError: On any other failure
        """


# ============================================================
# GitHub REST API
# ============================================================

class GitHubRefTransport(RefTransport):
    """
    Ref transport over the GitHub git data API.

    Authenticated with an installation token scoped to one repository.
    Every request carries a bounded timeout; nothing is retried here.
    """

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str,
        api_url: str = DEFAULT_GITHUB_API_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None
    ):
        self.owner = owner
        self.repo = repo
        self._timeout = timeout
        self._base = f"{api_url.rstrip('/')}/repos/{owner}/{repo}/git"
        self._session = session or requests.Session()
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _request(self, method: str, path: str, json_body: Optional[dict] = None) -> requests.Response:
        try:
            return self._session.request(
                method,
                f"{self._base}/{path}",
                json=json_body,
                headers=self._headers,
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

    def _json(self, resp: requests.Response, what: str) -> dict:
        if resp.status_code >= 400:
            raise TransportError(f"{what}: HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise TransportError(f"{what}: invalid JSON response") from e

    def publish(self, ref_name: str, payload: bytes, filename: str = PAYLOAD_FILENAME) -> str:
        blob = self._json(
            self._request("POST", "blobs", {
                "content": base64.b64encode(payload).decode("ascii"),
                "encoding": "base64",
            }),
            "create blob",
        )
        tree = self._json(
            self._request("POST", "trees", {
                "tree": [{"path": filename, "mode": "100644", "type": "blob", "sha": blob["sha"]}],
            }),
            "create tree",
        )
        commit = self._json(
            self._request("POST", "commits", {
                "message": "Update HR signal",
                "tree": tree["sha"],
                "parents": [],
            }),
            "create commit",
        )
        sha = commit["sha"]

        short_ref = ref_name[len("refs/"):] if ref_name.startswith("refs/") else ref_name
        resp = self._request("PATCH", f"refs/{short_ref}", {"sha": sha, "force": True})
        if resp.status_code == 422:
            # Ref does not exist yet
            self._json(self._request("POST", "refs", {"ref": f"refs/{short_ref}", "sha": sha}), "create ref")
        else:
            self._json(resp, "update ref")
        return sha

    def fetch(self, ref_name: str, filename: str = PAYLOAD_FILENAME) -> bytes:
        short_ref = ref_name[len("refs/"):] if ref_name.startswith("refs/") else ref_name
        resp = self._request("GET", f"ref/{short_ref}")
        if resp.status_code == 404:
            raise SignalNotFound(f"{ref_name} not found")
        ref = self._json(resp, "get ref")

        commit = self._json(self._request("GET", f"commits/{ref['object']['sha']}"), "get commit")
        tree = self._json(self._request("GET", f"trees/{commit['tree']['sha']}"), "get tree")

        entry = next((e for e in tree.get("tree", []) if e.get("path") == filename), None)
        if entry is None:
            raise SignalNotFound(f"{filename} missing from {ref_name}")

        blob = self._json(self._request("GET", f"blobs/{entry['sha']}"), "get blob")
        try:
            return base64.b64decode(blob["content"])
        except (KeyError, ValueError) as e:
            raise TransportError("blob content is not base64") from e


# ============================================================
# Local git remote (sandbox side)
# ============================================================

_GIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "hrgate",
    "GIT_AUTHOR_EMAIL": "hrgate@localhost",
    "GIT_COMMITTER_NAME": "hrgate",
    "GIT_COMMITTER_EMAIL": "hrgate@localhost",
}


class GitRemoteTransport(RefTransport):
    """
    Ref transport through the ``git`` binary and an existing remote.

    Reuses whatever credentials the checkout already has for its remote, so
    nothing extra is exposed inside the sandbox.
    """

    def __init__(
        self,
        repo_dir: str = ".",
        remote: str = "origin",
        timeout: float = DEFAULT_TIMEOUT_SECONDS
    ):
        self.repo_dir = repo_dir
        self.remote = remote
        self._timeout = timeout

    def _git(self, *args: str, input_bytes: Optional[bytes] = None) -> subprocess.CompletedProcess:
        env = dict(os.environ)
        for key, value in _GIT_IDENTITY.items():
            env.setdefault(key, value)
        env["GIT_TERMINAL_PROMPT"] = "0"
        # Error matching below relies on untranslated git messages
        env["LC_ALL"] = "C"
        try:
            return subprocess.run(
                ["git", *args],
                cwd=self.repo_dir,
                input=input_bytes,
                capture_output=True,
                timeout=self._timeout,
                env=env,
            )
        except subprocess.TimeoutExpired as e:
            raise TransportError(f"git {args[0]} timed out after {self._timeout}s") from e
        except OSError as e:
            raise TransportError(f"git unavailable: {e}") from e

    def _checked(self, *args: str, input_bytes: Optional[bytes] = None) -> str:
        proc = self._git(*args, input_bytes=input_bytes)
        if proc.returncode != 0:
            raise TransportError(f"git {args[0]} failed: {proc.stderr.decode('utf-8', 'replace').strip()}")
        return proc.stdout.decode("utf-8").strip()

    def publish(self, ref_name: str, payload: bytes, filename: str = PAYLOAD_FILENAME) -> str:
        blob = self._checked("hash-object", "-w", "--stdin", input_bytes=payload)
        tree = self._checked("mktree", input_bytes=f"100644 blob {blob}\t{filename}\n".encode("utf-8"))
        commit = self._checked("commit-tree", tree, "-m", "Update HR signal")
        self._checked("push", "--force", "--quiet", self.remote, f"{commit}:{ref_name}")
        return commit

    def fetch(self, ref_name: str, filename: str = PAYLOAD_FILENAME) -> bytes:
        temp_ref = f"refs/hrgate-check/{os.getpid()}-{secrets.token_hex(4)}"
        proc = self._git("fetch", "--quiet", "--no-tags", self.remote, f"+{ref_name}:{temp_ref}")
        if proc.returncode != 0:
            err = proc.stderr.decode("utf-8", "replace")
            if "couldn't find remote ref" in err.lower():
                raise SignalNotFound(f"{ref_name} not found on {self.remote}")
            raise TransportError(f"git fetch failed: {err.strip()}")

        try:
            shown = self._git("show", f"{temp_ref}:{filename}")
            if shown.returncode != 0:
                raise SignalNotFound(f"{filename} missing from {ref_name}")
            return shown.stdout
        finally:
            self._git("update-ref", "-d", temp_ref)


# ============================================================
# In-process (dev and tests)
# ============================================================

class MemoryRefTransport(RefTransport):
    """Thread-safe in-memory ref store."""

    def __init__(self):
        self._refs: Dict[Tuple[str, str], bytes] = {}
        self._lock = threading.RLock()
        self.published: List[Tuple[str, bytes]] = []

    @property
    def publish_count(self) -> int:
        with self._lock:
            return len(self.published)

    def publish(self, ref_name: str, payload: bytes, filename: str = PAYLOAD_FILENAME) -> str:
        with self._lock:
            self._refs[(ref_name, filename)] = bytes(payload)
            self.published.append((ref_name, bytes(payload)))
            return secrets.token_hex(20)

    def fetch(self, ref_name: str, filename: str = PAYLOAD_FILENAME) -> bytes:
        with self._lock:
            try:
                return self._refs[(ref_name, filename)]
            except KeyError:
                raise SignalNotFound(f"{ref_name} not found") from None

    def reset(self) -> None:
        with self._lock:
            self._refs.clear()
            self.published.clear()

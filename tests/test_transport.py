import base64
import os
import shutil
import subprocess
import tempfile
import unittest

import requests

from hrgate.transport import (
    GitHubRefTransport,
    GitRemoteTransport,
    MemoryRefTransport,
    SignalNotFound,
    TransportError,
    ref_name_for,
)

REF = "refs/hrgate/hr/octocat"


class TestRefNames(unittest.TestCase):

    def test_default_namespace(self):
        self.assertEqual(ref_name_for("octocat"), REF)

    def test_custom_namespace(self):
        self.assertEqual(ref_name_for("octocat", "acme/hr/"), "refs/acme/hr/octocat")

    def test_invalid_subject_keys(self):
        for key in ("", "a/b", "..", ".hidden", "a..b", "x.lock", "sp ace", "a~1", "a:b"):
            with self.subTest(key=key), self.assertRaises(ValueError):
                ref_name_for(key)


class TestMemoryRefTransport(unittest.TestCase):

    def test_publish_replaces(self):
        t = MemoryRefTransport()
        t.publish(REF, b"one")
        t.publish(REF, b"two")
        self.assertEqual(t.fetch(REF), b"two")
        self.assertEqual(t.publish_count, 2)

    def test_missing(self):
        with self.assertRaises(SignalNotFound):
            MemoryRefTransport().fetch(REF)

    def test_missing_is_a_transport_error(self):
        self.assertTrue(issubclass(SignalNotFound, TransportError))


# ============================================================
# GitHub API transport with a scripted session
# ============================================================

class FakeResponse:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body


class FakeSession:
    """Answers requests from a route table keyed by (method, path suffix)."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def request(self, method, url, json=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "json": json, "headers": headers, "timeout": timeout})
        for (m, suffix), response in self.routes.items():
            if m == method and url.endswith(suffix):
                if isinstance(response, Exception):
                    raise response
                return response
        return FakeResponse(404, {"message": "Not Found"})


def _transport(session):
    return GitHubRefTransport("acme", "app", "tok", api_url="https://gh.test", timeout=3, session=session)


class TestGitHubRefTransport(unittest.TestCase):

    def _publish_routes(self, patch_response):
        return {
            ("POST", "/git/blobs"): FakeResponse(201, {"sha": "blob1"}),
            ("POST", "/git/trees"): FakeResponse(201, {"sha": "tree1"}),
            ("POST", "/git/commits"): FakeResponse(201, {"sha": "commit1"}),
            ("PATCH", "/git/refs/hrgate/hr/octocat"): patch_response,
            ("POST", "/git/refs"): FakeResponse(201, {"ref": REF}),
        }

    def test_publish_builds_parentless_commit_and_forces_ref(self):
        session = FakeSession(self._publish_routes(FakeResponse(200, {"ref": REF})))
        self.assertEqual(_transport(session).publish(REF, b'{"v":1}'), "commit1")

        blob, tree, commit, patch = session.calls
        self.assertEqual(base64.b64decode(blob["json"]["content"]), b'{"v":1}')
        self.assertEqual(tree["json"]["tree"][0]["path"], "hr-signal.json")
        self.assertEqual(tree["json"]["tree"][0]["sha"], "blob1")
        self.assertEqual(commit["json"]["parents"], [])
        self.assertEqual(patch["json"], {"sha": "commit1", "force": True})
        self.assertEqual(patch["url"], "https://gh.test/repos/acme/app/git/refs/hrgate/hr/octocat")
        self.assertTrue(all(c["timeout"] == 3 for c in session.calls))
        self.assertEqual(patch["headers"]["Authorization"], "Bearer tok")

    def test_publish_creates_missing_ref(self):
        session = FakeSession(self._publish_routes(FakeResponse(422, {"message": "Reference does not exist"})))
        _transport(session).publish(REF, b"{}")
        create = session.calls[-1]
        self.assertEqual(create["method"], "POST")
        self.assertEqual(create["json"], {"ref": REF, "sha": "commit1"})

    def test_publish_http_error(self):
        routes = self._publish_routes(FakeResponse(200, {}))
        routes[("POST", "/git/commits")] = FakeResponse(500, {})
        with self.assertRaises(TransportError):
            _transport(FakeSession(routes)).publish(REF, b"{}")

    def test_network_failure(self):
        routes = {("POST", "/git/blobs"): requests.ConnectionError("down")}
        with self.assertRaises(TransportError):
            _transport(FakeSession(routes)).publish(REF, b"{}")

    def test_timeout(self):
        routes = {("GET", "/git/ref/hrgate/hr/octocat"): requests.Timeout("slow")}
        with self.assertRaises(TransportError) as ctx:
            _transport(FakeSession(routes)).fetch(REF)
        self.assertNotIsInstance(ctx.exception, SignalNotFound)

    def test_fetch_walks_ref_commit_tree_blob(self):
        routes = {
            ("GET", "/git/ref/hrgate/hr/octocat"): FakeResponse(200, {"object": {"sha": "c1"}}),
            ("GET", "/git/commits/c1"): FakeResponse(200, {"tree": {"sha": "t1"}}),
            ("GET", "/git/trees/t1"): FakeResponse(200, {"tree": [{"path": "hr-signal.json", "sha": "b1"}]}),
            ("GET", "/git/blobs/b1"): FakeResponse(200, {"content": base64.b64encode(b"payload").decode()}),
        }
        self.assertEqual(_transport(FakeSession(routes)).fetch(REF), b"payload")

    def test_fetch_missing_ref(self):
        with self.assertRaises(SignalNotFound):
            _transport(FakeSession({})).fetch(REF)

    def test_fetch_missing_file(self):
        routes = {
            ("GET", "/git/ref/hrgate/hr/octocat"): FakeResponse(200, {"object": {"sha": "c1"}}),
            ("GET", "/git/commits/c1"): FakeResponse(200, {"tree": {"sha": "t1"}}),
            ("GET", "/git/trees/t1"): FakeResponse(200, {"tree": [{"path": "README", "sha": "b1"}]}),
        }
        with self.assertRaises(SignalNotFound):
            _transport(FakeSession(routes)).fetch(REF)

    def test_fetch_server_error_is_unreachable(self):
        routes = {("GET", "/git/ref/hrgate/hr/octocat"): FakeResponse(502, None)}
        with self.assertRaises(TransportError) as ctx:
            _transport(FakeSession(routes)).fetch(REF)
        self.assertNotIsInstance(ctx.exception, SignalNotFound)


# ============================================================
# git subprocess transport against a real bare repository
# ============================================================

def _git(cwd, *args):
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True)


@unittest.skipUnless(shutil.which("git"), "git not installed")
class TestGitRemoteTransport(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp(prefix="hrgate-git-")
        self.remote = os.path.join(self.tmp, "remote.git")
        os.makedirs(self.remote)
        _git(self.remote, "init", "--bare", "--quiet")

        self.authority_repo = os.path.join(self.tmp, "authority")
        self.sandbox_repo = os.path.join(self.tmp, "sandbox")
        for repo in (self.authority_repo, self.sandbox_repo):
            os.makedirs(repo)
            _git(repo, "init", "--quiet")
            _git(repo, "remote", "add", "origin", self.remote)

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_publish_then_fetch(self):
        GitRemoteTransport(self.authority_repo).publish(REF, b'{"v":1}')
        self.assertEqual(GitRemoteTransport(self.sandbox_repo).fetch(REF), b'{"v":1}')

    def test_publish_replaces_without_history(self):
        publisher = GitRemoteTransport(self.authority_repo)
        publisher.publish(REF, b"first")
        publisher.publish(REF, b"second")

        self.assertEqual(GitRemoteTransport(self.sandbox_repo).fetch(REF), b"second")
        count = subprocess.run(
            ["git", "rev-list", "--count", REF], cwd=self.remote, capture_output=True, check=True
        ).stdout.strip()
        self.assertEqual(count, b"1")

    def test_fetch_leaves_no_temp_ref(self):
        GitRemoteTransport(self.authority_repo).publish(REF, b"x")
        GitRemoteTransport(self.sandbox_repo).fetch(REF)
        refs = subprocess.run(
            ["git", "for-each-ref", "refs/hrgate-check"], cwd=self.sandbox_repo, capture_output=True, check=True
        ).stdout
        self.assertEqual(refs, b"")

    def test_missing_ref(self):
        with self.assertRaises(SignalNotFound):
            GitRemoteTransport(self.sandbox_repo).fetch(REF)

    def test_missing_file(self):
        GitRemoteTransport(self.authority_repo).publish(REF, b"x", filename="other.json")
        with self.assertRaises(SignalNotFound):
            GitRemoteTransport(self.sandbox_repo).fetch(REF)

    def test_unreachable_remote(self):
        _git(self.sandbox_repo, "remote", "set-url", "origin", os.path.join(self.tmp, "gone.git"))
        with self.assertRaises(TransportError) as ctx:
            GitRemoteTransport(self.sandbox_repo).fetch(REF)
        self.assertNotIsInstance(ctx.exception, SignalNotFound)


if __name__ == "__main__":
    unittest.main()

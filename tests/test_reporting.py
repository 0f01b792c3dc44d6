import io
import urllib.error

from conftest import FakeBackend
from relayci.loader import load_text
from relayci.model import Artifact, JobStatus
from relayci.reporting import ReportDestination, publish
from relayci.runner import run_job
from relayci.scheduler import execute


DEFINITION = """\
executors:
  nightly:
    kind: container
    image: rustlang/rust:nightly
jobs:
  coverage:
    executor: nightly
    steps:
      - run: cargo test
      - run: grcov . -t lcov -o lcov.info
    artifacts:
      - {name: coverage, path: lcov.info}
      - {name: html, path: target/coverage/index.html}
workflows:
  coverage:
    jobs: [coverage]
reporting:
  url: https://codecov.io
  slug: tdelmas/fn_num_types
"""


def _write_lcov(handle):
    (handle.workdir / "lcov.info").write_text("TN:\nSF:src/lib.rs\nend_of_record\n")
    return 0


class FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class RecordingOpener:
    def __init__(self, body=b'{"id": 7, "url": "https://codecov.io/r/7"}', error=None):
        self.requests = []
        self.body = body
        self.error = error

    def __call__(self, req, timeout=None):
        self.requests.append(req)
        if self.error is not None:
            raise self.error
        return FakeResponse(self.body)


def _artifact(**overrides):
    fields = dict(
        name="coverage",
        data=b"TN:\n",
        job="coverage",
        workflow="coverage",
        revision="abc123",
        executor="nightly",
    )
    fields.update(overrides)
    return Artifact(**fields)


DESTINATION = ReportDestination(url="https://codecov.io", slug="tdelmas/fn_num_types", token="T0K3N")


def test_collect_reads_declared_artifacts(make_ctx):
    definition = load_text(DEFINITION)
    backend = FakeBackend(script={"grcov . -t lcov -o lcov.info": _write_lcov})
    run = run_job(definition.jobs["coverage"], "coverage", definition, make_ctx(container=backend))

    assert run.status is JobStatus.SUCCEEDED
    (artifact,) = run.artifacts  # the html report was never produced
    assert artifact.name == "coverage"
    assert artifact.data.startswith(b"TN:")
    assert (artifact.job, artifact.workflow, artifact.revision, artifact.executor) == (
        "coverage", "coverage", "abc123", "nightly",
    )


def test_failed_job_still_yields_partial_artifacts(make_ctx):
    definition = load_text(DEFINITION.replace("      - run: cargo test\n", "      - run: cargo test\n      - run: flaky\n"))
    backend = FakeBackend(script={"cargo test": _write_lcov, "flaky": 1})
    run = run_job(definition.jobs["coverage"], "coverage", definition, make_ctx(container=backend))

    assert run.status is JobStatus.FAILED
    assert [a.name for a in run.artifacts] == ["coverage"]


def test_errored_job_has_no_artifacts(make_ctx):
    definition = load_text(DEFINITION.replace("    artifacts:\n", "      - run: upload\n    artifacts:\n"))
    backend = FakeBackend()
    ctx = make_ctx(container=backend)

    def write_then_cancel(handle):
        _write_lcov(handle)
        ctx.cancel.cancel("interrupted by user")
        return 0

    backend.script["grcov . -t lcov -o lcov.info"] = write_then_cancel
    run = run_job(definition.jobs["coverage"], "coverage", definition, ctx)

    assert run.status is JobStatus.ERRORED
    assert run.artifacts == []


def test_publish_uploads_with_provenance():
    opener = RecordingOpener()
    result = publish([_artifact()], DESTINATION, opener=opener)

    assert result.ok
    assert result.published == ["coverage/coverage"]
    (req,) = opener.requests
    assert req.get_method() == "POST"
    assert req.full_url.startswith("https://codecov.io/upload?")
    assert "slug=tdelmas%2Ffn_num_types" in req.full_url
    assert "revision=abc123" in req.full_url
    assert "executor=nightly" in req.full_url
    assert req.get_header("Authorization") == "token T0K3N"
    assert req.data == b"TN:\n"


def test_publish_without_token_never_calls_out():
    opener = RecordingOpener()
    destination = ReportDestination(url="https://codecov.io", slug="tdelmas/fn_num_types")
    result = publish([_artifact()], destination, opener=opener)

    assert not result.ok
    assert "no upload token" in result.errors[0].message
    assert opener.requests == []


def test_publish_collects_http_and_network_errors():
    rejected = urllib.error.HTTPError(
        "https://codecov.io/upload", 401, "Unauthorized", {}, io.BytesIO(b'{"detail": "bad token"}')
    )
    result = publish([_artifact()], DESTINATION, opener=RecordingOpener(error=rejected))
    assert result.published == []
    assert result.errors[0].message == "upload rejected: 401 Unauthorized"
    assert "bad token" in result.errors[0].details["body"]

    offline = urllib.error.URLError("Name or service not known")
    result = publish([_artifact(), _artifact(name="html")], DESTINATION, opener=RecordingOpener(error=offline))
    assert len(result.errors) == 2
    assert all(e.message.startswith("network error") for e in result.errors)


def test_publish_rejects_garbage_response():
    result = publish([_artifact()], DESTINATION, opener=RecordingOpener(body=b"<html>"))
    assert result.errors[0].message.startswith("invalid response")


def test_reporting_failure_does_not_change_job_status(make_ctx, monkeypatch):
    definition = load_text(DEFINITION)
    backend = FakeBackend(script={"grcov . -t lcov -o lcov.info": _write_lcov})
    ctx = make_ctx(container=backend, destination=DESTINATION)
    opener = RecordingOpener(error=urllib.error.URLError("connection refused"))
    monkeypatch.setattr("urllib.request.urlopen", opener)

    result = execute(definition.workflows["coverage"], definition, ctx)

    assert result.runs["coverage"].status is JobStatus.SUCCEEDED
    assert result.succeeded
    assert len(opener.requests) == 1
    (error,) = result.reporting_errors
    assert error.job == "coverage"

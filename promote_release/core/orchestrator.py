"""Pipeline orchestrator — sequences one promotion run.

The Orchestrator wires the Version Resolver, marker check, Artifact Source
Client, Transform Stage, Manifest Builder, Signer, Smoke Test, Publisher and
Cache Invalidator together, driving a PipelineStateMachine through::

    resolving_version -> checking_marker -> (short_circuit | fetching)
        -> transforming -> building_manifest -> signing -> smoke_testing
        -> publishing -> invalidating -> done

Any ``PromoteError`` moves the run to ``failed``; the decision is taken on
the error category alone. There are no whole-run retries.
"""

from __future__ import annotations

import logging
import shutil

from promote_release.config import PromoteConfig
from promote_release.core.errors import PromoteError
from promote_release.core.stage_machine import PipelineStateMachine
from promote_release.models.outcome import RunOutcome
from promote_release.models.release import Channel, ReleaseCommit, ReleaseVersion
from promote_release.models.stages import PipelineState
from promote_release.sources.github import GithubClient
from promote_release.sources.upstream import UpstreamArtifacts
from promote_release.stages.fetch import ArtifactSource
from promote_release.stages.invalidator import CacheInvalidator
from promote_release.stages.manifest_builder import (
    ManifestBuilder,
    MarkerCheck,
    dated_key,
    next_marker,
)
from promote_release.stages.publisher import Publisher
from promote_release.stages.signer import Signer
from promote_release.stages.smoke_test import SmokeTester
from promote_release.stages.transform import Transformer
from promote_release.stages.version_resolver import VersionResolver
from promote_release.storage.object_store import ObjectStore, open_store

logger = logging.getLogger(__name__)

# Scratch directories under work_dir removed after a successful run.
BUILD_DIRS = ("dl", "public", "upstream")


class Orchestrator:
    """Runs the promotion pipeline for one channel.

    Parameters
    ----------
    config:
        Validated run configuration.
    github, upstream, download_store, upload_store, invalidator:
        Optional collaborators; built from ``config`` when omitted. Tests
        pass fakes backed by ``httpx.MockTransport`` and ``LocalObjectStore``.
    """

    def __init__(
        self,
        config: PromoteConfig,
        *,
        github: GithubClient | None = None,
        upstream: UpstreamArtifacts | None = None,
        download_store: ObjectStore | None = None,
        upload_store: ObjectStore | None = None,
        invalidator: CacheInvalidator | None = None,
    ) -> None:
        self.config = config
        self._owned: list = []
        self.github = github or self._own(GithubClient(config))
        self.upstream = upstream or self._own(UpstreamArtifacts(config))
        self.download_store = download_store or open_store(config, config.download_bucket)
        self.upload_store = upload_store or open_store(config, config.upload_bucket)
        self.invalidator = invalidator or self._own(CacheInvalidator(config))
        self.machine = PipelineStateMachine(config.channel)

    def _own(self, client):
        self._owned.append(client)
        return client

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def run(self) -> RunOutcome:
        """Execute the pipeline and return its outcome.

        ``KeyboardInterrupt`` moves the run to FAILED and propagates; the
        marker is never written by an interrupted run.
        """
        config = self.config
        # One date for every key and manifest field of this run.
        date = config.date
        outcome = RunOutcome(
            channel=config.channel,
            product=config.product,
            state=self.machine.state,
            date=date,
        )
        try:
            self._execute(date, outcome)
        except PromoteError as exc:
            self.machine.fail(f"{exc.category.value} error: {exc}")
            outcome.reason = str(exc)
            outcome.error_category = exc.category
        except BaseException as exc:
            self.machine.fail(f"aborted: {exc.__class__.__name__} {exc}".rstrip())
            raise
        finally:
            outcome.state = self.machine.state
            outcome.transitions = self.machine.history
            self.close()

        if outcome.state == PipelineState.DONE:
            self._clean_build_dir()
        return outcome

    def _execute(self, date: str, outcome: RunOutcome) -> None:
        config = self.config
        machine = self.machine
        channel = Channel.from_name(config.channel)

        machine.transition(PipelineState.RESOLVING_VERSION)
        resolver = VersionResolver(config, self.github)
        commit, version = resolver.resolve(channel)
        outcome.commit, outcome.version = commit.sha, version.version

        machine.transition(
            PipelineState.CHECKING_MARKER, f"{commit.short} ({version.version})"
        )
        decision = MarkerCheck(config, self.upload_store).check(date, commit, version)
        if not decision.proceed:
            machine.transition(PipelineState.SHORT_CIRCUIT, decision.reason)
            outcome.reason = decision.reason
            return

        machine.transition(PipelineState.FETCHING)
        source = ArtifactSource(config, self.download_store, self.upstream)
        artifacts = source.fetch_all(commit, version)

        machine.transition(PipelineState.TRANSFORMING)
        public = Transformer(config).run(artifacts)

        machine.transition(PipelineState.BUILDING_MANIFEST)
        manifest = ManifestBuilder(config).build(date, commit, version, public)

        machine.transition(PipelineState.SIGNING)
        signature = Signer(config).sign(manifest, public)

        machine.transition(PipelineState.SMOKE_TESTING)
        SmokeTester(config).run(date, commit, version, public, signature)

        machine.transition(PipelineState.PUBLISHING)
        manifest_key = dated_key(config, date, manifest.file_name)
        marker = next_marker(decision.marker, manifest, manifest_key)
        record = Publisher(config, self.upload_store).publish(
            manifest, signature, public, marker
        )
        outcome.manifest_key = record.manifest_key
        outcome.objects_reused = sum(1 for o in record.objects if o.skipped)
        outcome.objects_written = len(record.objects) - outcome.objects_reused

        machine.transition(PipelineState.INVALIDATING)
        report = self.invalidator.run(record)
        outcome.invalidation_failures = report.failures

        machine.transition(PipelineState.DONE, self._summary(commit, version))

    @staticmethod
    def _summary(commit: ReleaseCommit, version: ReleaseVersion) -> str:
        return f"released {version.version} from {commit.short}"

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def _clean_build_dir(self) -> None:
        if self.config.skip_delete_build_dir:
            logger.info("keeping build directory %s", self.config.work_dir)
            return
        for name in BUILD_DIRS:
            shutil.rmtree(self.config.work_dir / name, ignore_errors=True)

    def close(self) -> None:
        for client in self._owned:
            client.close()
        self._owned.clear()

"""Tests for the transcode worker's single-attempt pipeline.

Collaborators are the in-process fakes from conftest; no ffmpeg, S3 or HTTP.

Covers:
- end-to-end happy path (upload, delete original, ready callback)
- validation failures never touch storage or the callback target
- staging is released after success and after a failure at every step
- original deletion and callback failures never change the outcome
"""

import pytest

from services.worker_transcode.run import TranscodeWorker, parse_envelope
from soundmap.errors import (
    JobValidationError,
    NotifyError,
    ProbeError,
    StorageUnavailableError,
    TranscodeError,
    TranscodeErrorCode,
)
from soundmap.schemas import FailedOutcome, ReadyOutcome

HOOK_PAYLOAD = {
    "soundId": "s1",
    "sourceKey": "u1/100-test.wav",
    "webhookUrl": "https://app/hook",
    "secret": "shh",
}


@pytest.fixture
def worker(fake_store, fake_prober, fake_transcoder, fake_notifier, staging_root):
    return TranscodeWorker(
        store=fake_store,
        prober=fake_prober,
        transcoder=fake_transcoder,
        notifier=fake_notifier,
        staging_root=staging_root,
    )


def assert_staging_empty(staging_root):
    assert list(staging_root.iterdir()) == []


class TestParseEnvelope:
    def test_camel_case_payload(self, delivery_factory):
        envelope = parse_envelope(delivery_factory(HOOK_PAYLOAD, job_id="j-1"))

        assert envelope.job_id == "j-1"
        assert envelope.sound_id == "s1"
        assert envelope.source_key == "u1/100-test.wav"
        assert envelope.webhook_url == "https://app/hook"
        assert envelope.secret == "shh"
        assert envelope.has_callback

    def test_legacy_s3_key_alias(self, delivery_factory):
        envelope = parse_envelope(delivery_factory({"soundId": "s1", "s3Key": "u1/a.wav"}))

        assert envelope.source_key == "u1/a.wav"
        assert not envelope.has_callback

    def test_unknown_fields_ignored(self, delivery_factory):
        payload = {**HOOK_PAYLOAD, "originalUrl": "https://cdn/u1/100-test.wav"}

        assert parse_envelope(delivery_factory(payload)).sound_id == "s1"

    @pytest.mark.parametrize(
        "payload",
        [
            {"sourceKey": "u1/a.wav"},
            {"soundId": "s1"},
            {"soundId": "", "sourceKey": "u1/a.wav"},
            {"soundId": "s1", "sourceKey": ""},
            {},
        ],
    )
    def test_missing_required_fields(self, delivery_factory, payload):
        with pytest.raises(JobValidationError) as exc_info:
            parse_envelope(delivery_factory(payload))

        assert exc_info.value.error_code == TranscodeErrorCode.VALIDATION_ERROR

    def test_non_object_payload(self, delivery_factory):
        with pytest.raises(JobValidationError):
            parse_envelope(delivery_factory(["not", "an", "object"]))

    def test_callback_requires_both_url_and_secret(self, delivery_factory):
        payload = {"soundId": "s1", "sourceKey": "u1/a.wav", "webhookUrl": "https://app/hook"}

        assert not parse_envelope(delivery_factory(payload)).has_callback


class TestHappyPath:
    """Full pipeline against fakes."""

    def test_end_to_end(
        self, worker, delivery_factory, fake_store, fake_notifier, fake_transcoder, staging_root
    ):
        outcome = worker.run_attempt(delivery_factory(HOOK_PAYLOAD))

        assert isinstance(outcome, ReadyOutcome)
        assert outcome.output_key == "u1/100-test.mp3"
        assert outcome.output_url == "http://storage.test/sounds/u1/100-test.mp3"

        assert fake_store.keys_called("get") == ["u1/100-test.wav"]
        assert fake_store.keys_called("put") == ["u1/100-test.mp3"]
        assert fake_store.keys_called("delete") == ["u1/100-test.wav"]
        assert fake_store.objects["u1/100-test.mp3"] == fake_transcoder.output
        assert fake_store.content_types["u1/100-test.mp3"] == "audio/mpeg"
        assert "u1/100-test.wav" not in fake_store.objects

        assert len(fake_notifier.calls) == 1
        call = fake_notifier.calls[0]
        assert call["url"] == "https://app/hook"
        assert call["secret"] == "shh"
        assert call["sound_id"] == "s1"
        assert call["outcome"].status == "ready"
        assert call["outcome"].output_url == outcome.output_url

        assert_staging_empty(staging_root)

    def test_downloaded_bytes_reach_prober_and_transcoder(
        self, worker, delivery_factory, fake_transcoder, fake_prober, sample_wav_bytes
    ):
        seen = {}

        def probe(path):
            seen["input"] = path.read_bytes()
            return fake_prober.metadata

        fake_prober.probe = probe

        worker.run_attempt(delivery_factory(HOOK_PAYLOAD))

        assert seen["input"] == sample_wav_bytes
        input_path, output_path = fake_transcoder.calls[0]
        assert input_path.name == "input"
        assert output_path.suffix == ".mp3"

    def test_metadata_attached_to_outcome(self, worker, delivery_factory, stereo_metadata):
        outcome = worker.run_attempt(delivery_factory(HOOK_PAYLOAD))

        assert outcome.metadata == stereo_metadata

    def test_no_callback_without_url(self, worker, delivery_factory, fake_notifier):
        payload = {"soundId": "s1", "sourceKey": "u1/100-test.wav"}

        outcome = worker.run_attempt(delivery_factory(payload))

        assert isinstance(outcome, ReadyOutcome)
        assert fake_notifier.calls == []


class TestValidationFailure:
    def test_invalid_payload_touches_nothing(
        self, worker, delivery_factory, fake_store, fake_notifier, fake_prober, staging_root
    ):
        payload = {"sourceKey": "x.wav", "webhookUrl": "https://app/hook", "secret": "shh"}

        outcome = worker.run_attempt(delivery_factory(payload))

        assert isinstance(outcome, FailedOutcome)
        assert outcome.error_code == TranscodeErrorCode.VALIDATION_ERROR
        assert fake_store.calls == []
        assert fake_notifier.calls == []
        assert fake_prober.probed == []
        assert_staging_empty(staging_root)


class TestStepFailures:
    """Each failing step short-circuits to cleanup and a failed outcome."""

    def test_missing_input(self, worker, delivery_factory, fake_store, fake_notifier, staging_root):
        fake_store.objects.clear()

        outcome = worker.run_attempt(delivery_factory(HOOK_PAYLOAD))

        assert outcome.error_code == TranscodeErrorCode.INPUT_NOT_FOUND
        assert fake_store.keys_called("put") == []
        assert fake_store.keys_called("delete") == []
        assert [c["outcome"].status for c in fake_notifier.calls] == ["failed"]
        assert_staging_empty(staging_root)

    def test_storage_unavailable_on_download(
        self, worker, delivery_factory, fake_store, fake_prober, staging_root
    ):
        fake_store.get_error = StorageUnavailableError("get", "u1/100-test.wav", "AccessDenied")

        outcome = worker.run_attempt(delivery_factory(HOOK_PAYLOAD))

        assert outcome.error_code == TranscodeErrorCode.STORAGE_UNAVAILABLE
        assert fake_prober.probed == []
        assert_staging_empty(staging_root)

    def test_partial_download_is_cleaned_up(
        self, worker, delivery_factory, fake_store, staging_root
    ):
        class BrokenBody:
            def __init__(self):
                self.chunks = [b"RIFF-partial"]

            def read(self, amt=None):
                if self.chunks:
                    return self.chunks.pop()
                raise StorageUnavailableError("get", "u1/100-test.wav", "connection reset")

            def __enter__(self):
                return self

            def __exit__(self, *exc_info):
                return None

        fake_store.get = lambda key: BrokenBody()

        outcome = worker.run_attempt(delivery_factory(HOOK_PAYLOAD))

        assert outcome.error_code == TranscodeErrorCode.STORAGE_UNAVAILABLE
        assert_staging_empty(staging_root)

    def test_probe_failure(
        self, worker, delivery_factory, fake_prober, fake_transcoder, fake_store, staging_root
    ):
        fake_prober.error = ProbeError("/staging/input", "Invalid data found")

        outcome = worker.run_attempt(delivery_factory(HOOK_PAYLOAD))

        assert outcome.error_code == TranscodeErrorCode.FILE_CORRUPT
        assert fake_transcoder.calls == []
        assert fake_store.keys_called("put") == []
        assert "u1/100-test.wav" in fake_store.objects
        assert_staging_empty(staging_root)

    def test_transcode_failure_surfaces_stderr(
        self, worker, delivery_factory, fake_transcoder, fake_store, fake_notifier, staging_root
    ):
        fake_transcoder.error = TranscodeError(
            TranscodeErrorCode.TRANSCODE_FAILED, "exited with status 1", "No space left on device"
        )

        outcome = worker.run_attempt(delivery_factory(HOOK_PAYLOAD))

        assert outcome.error_code == TranscodeErrorCode.TRANSCODE_FAILED
        assert "No space left on device" in outcome.message
        assert fake_store.keys_called("put") == []
        assert fake_store.keys_called("delete") == []
        assert fake_notifier.calls[0]["outcome"].status == "failed"
        assert_staging_empty(staging_root)

    def test_upload_failure_keeps_original(
        self, worker, delivery_factory, fake_store, fake_notifier, staging_root
    ):
        fake_store.put_error = StorageUnavailableError("put", "u1/100-test.mp3", "AccessDenied")

        outcome = worker.run_attempt(delivery_factory(HOOK_PAYLOAD))

        assert outcome.error_code == TranscodeErrorCode.STORAGE_UNAVAILABLE
        assert fake_store.keys_called("delete") == []
        assert "u1/100-test.wav" in fake_store.objects
        assert [c["outcome"].status for c in fake_notifier.calls] == ["failed"]
        assert_staging_empty(staging_root)

    def test_unexpected_exception_is_worker_error(
        self, worker, delivery_factory, fake_prober, staging_root
    ):
        fake_prober.error = RuntimeError("bug")

        outcome = worker.run_attempt(delivery_factory(HOOK_PAYLOAD))

        assert outcome.error_code == TranscodeErrorCode.WORKER_ERROR
        assert "bug" in outcome.message
        assert_staging_empty(staging_root)


class TestBestEffortSteps:
    """Original deletion and the callback never change the outcome."""

    def test_same_key_skips_deletion(self, worker, delivery_factory, fake_store, sample_wav_bytes):
        fake_store.objects["u1/already.mp3"] = sample_wav_bytes
        payload = {"soundId": "s1", "sourceKey": "u1/already.mp3"}

        outcome = worker.run_attempt(delivery_factory(payload))

        assert isinstance(outcome, ReadyOutcome)
        assert fake_store.keys_called("put") == ["u1/already.mp3"]
        assert fake_store.keys_called("delete") == []
        assert "u1/already.mp3" in fake_store.objects

    def test_delete_failure_still_ready(self, worker, delivery_factory, fake_store, fake_notifier):
        fake_store.delete_error = StorageUnavailableError("delete", "u1/100-test.wav", "timeout")

        outcome = worker.run_attempt(delivery_factory(HOOK_PAYLOAD))

        assert isinstance(outcome, ReadyOutcome)
        assert fake_notifier.calls[0]["outcome"].status == "ready"

    def test_notify_failure_still_ready(
        self, worker, delivery_factory, fake_notifier, staging_root
    ):
        fake_notifier.error = NotifyError("https://app/hook", "HTTP 500")

        outcome = worker.run_attempt(delivery_factory(HOOK_PAYLOAD))

        assert isinstance(outcome, ReadyOutcome)
        assert len(fake_notifier.calls) == 1
        assert_staging_empty(staging_root)

    def test_notify_failure_after_pipeline_failure_keeps_original_error(
        self, worker, delivery_factory, fake_store, fake_notifier
    ):
        fake_store.objects.clear()
        fake_notifier.error = NotifyError("https://app/hook", "connection refused")

        outcome = worker.run_attempt(delivery_factory(HOOK_PAYLOAD))

        assert outcome.error_code == TranscodeErrorCode.INPUT_NOT_FOUND

import threading
import time

import pytest

from app.concurrency import RetryPolicy
from app.exceptions import InvalidInputError, StoreUnavailableError, UpstreamUnavailableError
from app.ingestion import IngestionOrchestrator
from app.models import FailureReason, IngestFailure, IngestSuccess

from conftest import (
    FakeBlobStore,
    FakeDescriber,
    FakeEmbedder,
    FakeVectorDB,
    make_image_bytes,
    payload,
)


def test_single_file_is_stored_described_embedded_and_persisted(ingestion, blob_store, vector_db, image_bytes):
    outcomes = ingestion.ingest([payload("dog.png", image_bytes)])

    assert len(outcomes) == 1
    outcome = outcomes[0]
    assert isinstance(outcome, IngestSuccess)
    assert outcome.index == 0
    assert outcome.url == blob_store.writes[0]["url"]
    assert outcome.description
    assert outcome.record_id == vector_db.records[0].id

    assert len(blob_store.writes) == 1
    assert blob_store.writes[0]["content_type"] == "image/png"
    assert vector_db.count() == 1
    record = vector_db.records[0]
    assert record.url == outcome.url
    assert record.description == outcome.description


def test_record_embedding_is_the_embedding_of_the_description(ingestion, embedder, vector_db, image_bytes):
    ingestion.ingest([payload("dog.png", image_bytes)])

    record = vector_db.records[0]
    assert record.embedding == embedder.embed(record.description)


def test_second_file_description_failure_keeps_first_success(vector_db, embedder, no_retry):
    describer = FakeDescriber(fail_for={"broken"})
    orchestrator = IngestionOrchestrator(
        blob_store=FakeBlobStore(),
        describer=describer,
        embedder=embedder,
        db=vector_db,
        retry_policy=no_retry,
    )
    files = [
        payload("first.png", make_image_bytes((10, 10, 10))),
        payload("broken.png", make_image_bytes((20, 20, 20))),
    ]

    outcomes = orchestrator.ingest(files)

    assert isinstance(outcomes[0], IngestSuccess)
    assert isinstance(outcomes[1], IngestFailure)
    assert outcomes[1].reason == FailureReason.DESCRIPTION_UNAVAILABLE
    assert vector_db.count() == 1


def test_outcomes_follow_input_order_under_concurrency(vector_db, embedder, no_retry):
    fail_for = {"/img3.png", "/img6.png"}
    orchestrator = IngestionOrchestrator(
        blob_store=FakeBlobStore(),
        describer=FakeDescriber(fail_for=fail_for),
        embedder=embedder,
        db=vector_db,
        max_workers=4,
        retry_policy=no_retry,
    )
    files = [payload(f"img{i}.png", make_image_bytes((i, i, i))) for i in range(10)]

    outcomes = orchestrator.ingest(files)

    assert [o.index for o in outcomes] == list(range(10))
    for i, outcome in enumerate(outcomes):
        if f"/img{i}.png" in fail_for:
            assert outcome.reason == FailureReason.DESCRIPTION_UNAVAILABLE
        else:
            assert outcome.ok
            assert outcome.url.endswith(f"/img{i}.png")
    assert vector_db.count() == 8


def test_identical_bytes_create_two_independent_records(ingestion, vector_db, image_bytes):
    first = ingestion.ingest([payload("same.png", image_bytes)])[0]
    second = ingestion.ingest([payload("same.png", image_bytes)])[0]

    assert first.ok and second.ok
    assert first.record_id != second.record_id
    assert vector_db.count() == 2


def test_undecodable_payload_fails_without_external_calls(ingestion, blob_store, describer, image_bytes):
    outcomes = ingestion.ingest([payload("notes.txt", b"definitely not an image"), payload("ok.png", image_bytes)])

    assert outcomes[0].reason == FailureReason.INVALID_IMAGE
    assert outcomes[1].ok
    assert [w["name"] for w in blob_store.writes] == ["ok.png"]
    assert len(describer.calls) == 1


def test_blob_write_failure_skips_remaining_steps(describer, embedder, vector_db, no_retry, image_bytes):
    orchestrator = IngestionOrchestrator(
        blob_store=FakeBlobStore(fail_names={"bad.png"}),
        describer=describer,
        embedder=embedder,
        db=vector_db,
        retry_policy=no_retry,
    )

    outcomes = orchestrator.ingest([payload("bad.png", image_bytes)])

    assert outcomes[0].reason == FailureReason.BLOB_WRITE_FAILED
    assert describer.calls == []
    assert vector_db.count() == 0


def test_embedding_failure_is_reported_per_item(blob_store, vector_db, no_retry, image_bytes):
    describer = FakeDescriber(descriptions={"poison": "poison description"})
    orchestrator = IngestionOrchestrator(
        blob_store=blob_store,
        describer=describer,
        embedder=FakeEmbedder(fail_for={"poison"}),
        db=vector_db,
        retry_policy=no_retry,
    )

    outcomes = orchestrator.ingest([payload("poison.png", image_bytes), payload("fine.png", image_bytes)])

    assert outcomes[0].reason == FailureReason.EMBEDDING_UNAVAILABLE
    assert outcomes[1].ok
    assert vector_db.count() == 1


def test_persist_failure_is_not_retried(blob_store, describer, embedder, image_bytes):
    db = FakeVectorDB(fail_insert=True)
    orchestrator = IngestionOrchestrator(
        blob_store=blob_store,
        describer=describer,
        embedder=embedder,
        db=db,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0),
    )

    outcomes = orchestrator.ingest([payload("dog.png", image_bytes)])

    assert outcomes[0].reason == FailureReason.PERSIST_FAILED
    assert "constraint" in outcomes[0].detail
    assert db.insert_calls == 1
    # the blob write already happened and is not rolled back
    assert len(blob_store.writes) == 1


def test_transient_description_failure_is_retried_when_enabled(blob_store, embedder, vector_db, image_bytes):
    describer = FakeDescriber(transient_failures=1)
    orchestrator = IngestionOrchestrator(
        blob_store=blob_store,
        describer=describer,
        embedder=embedder,
        db=vector_db,
        retry_policy=RetryPolicy(max_attempts=2, base_delay=0.0),
    )

    outcomes = orchestrator.ingest([payload("dog.png", image_bytes)])

    assert outcomes[0].ok
    assert len(describer.calls) == 2
    assert len(blob_store.writes) == 1


def test_no_retry_by_default(blob_store, embedder, vector_db, image_bytes):
    describer = FakeDescriber(transient_failures=1)
    orchestrator = IngestionOrchestrator(blob_store, describer, embedder, vector_db)

    outcomes = orchestrator.ingest([payload("dog.png", image_bytes)])

    assert outcomes[0].reason == FailureReason.DESCRIPTION_UNAVAILABLE
    assert len(describer.calls) == 1


@pytest.mark.parametrize("files", [[], None])
def test_empty_batch_is_rejected_before_any_call(files, describer, embedder, vector_db):
    # Even a misconfigured blob store must not be consulted for an empty batch
    blob_store = FakeBlobStore(ready=False)
    orchestrator = IngestionOrchestrator(blob_store, describer, embedder, vector_db)

    with pytest.raises(InvalidInputError):
        orchestrator.ingest(files)
    assert blob_store.writes == []


def test_non_payload_entries_are_rejected(ingestion):
    with pytest.raises(InvalidInputError):
        ingestion.ingest([b"raw bytes"])


def test_missing_blob_credentials_fail_the_whole_call(describer, embedder, vector_db, image_bytes):
    blob_store = FakeBlobStore(ready=False)
    orchestrator = IngestionOrchestrator(blob_store, describer, embedder, vector_db)

    with pytest.raises(StoreUnavailableError):
        orchestrator.ingest([payload("dog.png", image_bytes)])
    assert blob_store.writes == []
    assert describer.calls == []


def test_missing_provider_credentials_fail_the_whole_call(blob_store, embedder, vector_db, image_bytes):
    orchestrator = IngestionOrchestrator(blob_store, FakeDescriber(ready=False), embedder, vector_db)

    with pytest.raises(UpstreamUnavailableError):
        orchestrator.ingest([payload("dog.png", image_bytes)])
    assert blob_store.writes == []


def test_cancelled_batch_reports_every_item_as_cancelled(ingestion, blob_store, vector_db, image_bytes):
    cancel_event = threading.Event()
    cancel_event.set()

    outcomes = ingestion.ingest([payload("a.png", image_bytes), payload("b.png", image_bytes)], cancel_event=cancel_event)

    assert [o.reason for o in outcomes] == [FailureReason.CANCELLED, FailureReason.CANCELLED]
    assert [o.index for o in outcomes] == [0, 1]
    assert blob_store.writes == []
    assert vector_db.count() == 0


def test_outcomes_serialise_to_wire_shape(ingestion, image_bytes):
    outcomes = ingestion.ingest([payload("dog.png", image_bytes), payload("bad.txt", b"nope")])

    success, failure = (o.to_dict() for o in outcomes)
    assert success["status"] == "success"
    assert set(success) == {"index", "status", "image_url", "description", "id"}
    assert failure == {
        "index": 1,
        "status": "failure",
        "reason": "InvalidImage",
        "detail": failure["detail"],
    }


@pytest.mark.parametrize("description", ["", "   \n"])
def test_blank_description_is_never_embedded_or_persisted(description, blob_store, embedder, vector_db, no_retry, image_bytes):
    orchestrator = IngestionOrchestrator(
        blob_store=blob_store,
        describer=FakeDescriber(descriptions={"blank": description}),
        embedder=embedder,
        db=vector_db,
        retry_policy=no_retry,
    )

    outcomes = orchestrator.ingest([payload("blank.png", image_bytes), payload("fine.png", image_bytes)])

    assert outcomes[0].reason == FailureReason.DESCRIPTION_UNAVAILABLE
    assert outcomes[1].ok
    assert embedder.calls == [outcomes[1].description]
    assert vector_db.count() == 1


def test_empty_embedding_is_an_embedding_failure(blob_store, vector_db, no_retry, image_bytes):
    orchestrator = IngestionOrchestrator(
        blob_store=blob_store,
        describer=FakeDescriber(descriptions={"hollow": "hollow description"}),
        embedder=FakeEmbedder(empty_for={"hollow"}),
        db=vector_db,
        retry_policy=no_retry,
    )

    outcomes = orchestrator.ingest([payload("hollow.png", image_bytes)])

    assert outcomes[0].reason == FailureReason.EMBEDDING_UNAVAILABLE
    assert vector_db.insert_calls == 0


def test_item_in_flight_at_timeout_is_cancelled_and_not_persisted(blob_store, embedder, vector_db, no_retry, image_bytes):
    orchestrator = IngestionOrchestrator(
        blob_store=blob_store,
        describer=FakeDescriber(delay=0.3),
        embedder=embedder,
        db=vector_db,
        batch_timeout=0.1,
        retry_policy=no_retry,
    )

    outcomes = orchestrator.ingest([payload("slow.png", image_bytes)])
    # let the abandoned worker run to completion
    time.sleep(0.5)

    assert outcomes[0].reason == FailureReason.CANCELLED
    assert vector_db.insert_calls == 0
    assert vector_db.count() == 0

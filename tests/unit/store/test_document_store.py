"""Unit tests for the document, job-record and data-source store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from docflow.store.document_store import DocumentStore


def test_insert_get_and_scope_documents_by_user(session_factory) -> None:
    store = DocumentStore(session_factory=session_factory)
    document_id = store.insert_document(
        user_id="u1", title="Uchwała nr XV/12/2024", content="Treść", document_type="resolution"
    )

    document = store.get_document(document_id, user_id="u1")
    assert document["title"] == "Uchwała nr XV/12/2024"
    assert document["keywords"] == []
    assert store.get_document(document_id, user_id="u2") is None


def test_search_documents_is_case_insensitive_and_excludes_self(session_factory) -> None:
    store = DocumentStore(session_factory=session_factory)
    main = store.insert_document(user_id="u1", title="Projekt", content="Zobacz DRUK NR 42")
    other = store.insert_document(user_id="u1", title="Druk nr 42", content="Załącznik")
    store.insert_document(user_id="u2", title="Druk nr 42", content="obcy")

    results = store.search_documents(user_id="u1", query="druk nr 42", exclude_id=main)
    assert [row["document_id"] for row in results] == [other]


def test_document_job_lifecycle(session_factory) -> None:
    store = DocumentStore(session_factory=session_factory)
    record_id = store.create_document_job(
        user_id="u1", job_id="doc-1", file_name="skan.png", mime_type="image/png", file_size=10
    )

    store.update_document_job("doc-1", status="failed", error="OCR failed")
    record = store.get_document_job("doc-1", user_id="u1")
    assert record["record_id"] == record_id
    assert record["progress"] == 100
    assert record["completed_at"] is not None

    assert store.reset_document_job("doc-1") is True
    record = store.get_document_job("doc-1")
    assert record["status"] == "pending"
    assert record["error"] is None

    assert store.delete_document_job("doc-1", user_id="u2") is False
    assert store.delete_document_job("doc-1", user_id="u1") is True
    assert store.list_document_jobs(user_id="u1") == []


def test_transcription_records_filter_and_cleanup(session_factory) -> None:
    store = DocumentStore(session_factory=session_factory)
    store.create_transcription_job(job_id="t1", user_id="u1", video_url="https://yt/1", video_title="Sesja I")
    store.create_transcription_job(job_id="t2", user_id="u1", video_url="https://yt/2", video_title="Sesja II")
    store.update_transcription_job("t2", status="completed", progress=150, result_document_id="doc-9")

    pending = store.list_transcription_jobs(statuses=("pending",))
    assert [row["job_id"] for row in pending] == ["t1"]
    finished = store.get_transcription_job("t2")
    assert finished["progress"] == 100
    assert finished["result_document_id"] == "doc-9"

    future = datetime.now(timezone.utc) + timedelta(minutes=1)
    assert store.delete_finished_transcriptions(completed_before=future) == 1
    assert store.get_transcription_job("t2") is None
    assert store.update_transcription_job("t1") is False


def test_sources_are_listed_per_user_and_marked_scraped(session_factory) -> None:
    store = DocumentStore(session_factory=session_factory)
    source_id = store.create_source(user_id="u1", name="BIP", source_type="website", url="https://bip.example")
    store.create_source(user_id="u2", name="Other", source_type="website", url="https://other.example")

    assert [source["name"] for source in store.list_sources(user_id="u1")] == ["BIP"]
    assert store.get_source(source_id)["last_scraped_at"] is None

    assert store.mark_scraped(source_id) is True
    assert isinstance(store.get_source(source_id)["last_scraped_at"], datetime)
    assert store.find_by_source_url(user_id="u1", source_url="https://nowhere") is None

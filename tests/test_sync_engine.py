"""End-to-end tests for the sync engine with an in-memory DuckDB destination."""

import asyncio
import logging
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import (
    DEDUPE_TABLE, EVENTS_SCHEMA, MERGE_TABLE, USERS_SCHEMA, fetch_rows, insert_rows, naive, ts,
)
from mirrorsync.backend.duckdb import DuckDBWriteStream
from mirrorsync.core.enums import ReconcileStrategy
from mirrorsync.core.exceptions import ConfigurationError, PreconditionError, TransportError
from mirrorsync.core.models import LEGACY_SYNC_TIME
from mirrorsync.core.schema_models import TableField, TableSchema
from mirrorsync.source.iterable_source import IterableSource
from mirrorsync.sync.sync_engine import (
    SyncEngine, count_table_rows, push_rows_to_table, sync_rows_to_table,
)


def doc(identity, name, score=1, day=1):
    return {'_id': identity, 'name': name, 'score': score, 'updated': ts(day)}


def to_user(document):
    if document['_id'] == "B":
        return None
    return {
        'ID': document['_id'],
        'Name': document['name'],
        'Score': document['score'],
        'Updated': document['updated'],
    }


def to_event(document):
    return {'ID': document['_id'], 'Name': document['name'], 'Updated': document['updated']}


class TestMergeSync:

    async def _sync(self, warehouse, documents, transform=to_user, **options):
        engine = SyncEngine(warehouse, MERGE_TABLE, batch_size=2, progress_interval=0, **options)
        return await engine.sync(IterableSource(documents), transform)

    @pytest.mark.asyncio
    async def test_skipped_document_leaves_no_row(self, warehouse, merge_table):
        result = await self._sync(warehouse, [doc("A", "a"), doc("B", "b"), doc("C", "c")])

        assert result.success, result.error
        assert result.strategy == ReconcileStrategy.MERGE
        rows = await fetch_rows(warehouse, MERGE_TABLE)
        assert [r['ID'] for r in rows] == ["A", "C"]

        stats = result.stats
        assert stats.rows_read == 3
        assert stats.rows_skipped == 1
        assert stats.rows_submitted == 2
        assert stats.rows_written == 2
        assert stats.initial_row_count == 0
        assert stats.final_row_count == 2
        assert await warehouse.count_rows(merge_table.staging()) == 0

    @pytest.mark.asyncio
    async def test_rerun_picks_up_changed_document(self, warehouse, merge_table):
        await self._sync(warehouse, [doc("A", "a"), doc("B", "b"), doc("C", "c")])

        result = await self._sync(warehouse, [doc("A", "a"), doc("B", "b"), doc("C", "c-renamed", 7, day=2)])

        assert result.success, result.error
        rows = await fetch_rows(warehouse, MERGE_TABLE)
        assert [r['ID'] for r in rows] == ["A", "C"]
        assert rows[1]['Name'] == "c-renamed"
        assert rows[1]['Score'] == 7
        assert rows[1]['Updated'] == naive(ts(2))
        assert result.stats.initial_row_count == 2

    @pytest.mark.asyncio
    async def test_source_deletions_are_mirrored(self, warehouse, merge_table):
        await self._sync(warehouse, [doc("A", "a"), doc("C", "c")])
        await self._sync(warehouse, [doc("C", "c")])

        rows = await fetch_rows(warehouse, MERGE_TABLE)
        assert [r['ID'] for r in rows] == ["C"]

    @pytest.mark.asyncio
    async def test_unchanged_rerun_is_idempotent(self, warehouse, merge_table):
        documents = [doc("A", "a"), doc("C", "c"), doc("D", "d"), doc("E", "e")]
        await self._sync(warehouse, documents)
        first = await fetch_rows(warehouse, MERGE_TABLE)

        await self._sync(warehouse, documents)
        second = await fetch_rows(warehouse, MERGE_TABLE)

        assert first == second
        assert len(second) == 4

    @pytest.mark.asyncio
    async def test_duplicate_documents_keep_latest_update(self, warehouse, merge_table):
        result = await self._sync(warehouse, [doc("A", "old", day=1), doc("A", "new", day=3), doc("A", "mid", day=2)])

        assert result.success, result.error
        rows = await fetch_rows(warehouse, MERGE_TABLE)
        assert [(r['ID'], r['Name']) for r in rows] == [("A", "new")]

    @pytest.mark.asyncio
    async def test_non_empty_staging_fails_and_leaves_tables_alone(self, warehouse, merge_table):
        existing = {'ID': "A", 'Name': "a", 'Score': 1, 'Updated': ts(1)}
        await insert_rows(warehouse, MERGE_TABLE, USERS_SCHEMA, [existing])
        await insert_rows(warehouse, merge_table.staging().table, USERS_SCHEMA,
                          [{'ID': "Z", 'Name': "other run", 'Score': 1, 'Updated': ts(1)}])

        result = await self._sync(warehouse, [doc("C", "c")])

        assert not result.success
        assert isinstance(result.error, PreconditionError)
        rows = await fetch_rows(warehouse, MERGE_TABLE)
        assert [r['ID'] for r in rows] == ["A"]
        # Staging may belong to a concurrent run and is never drained here
        assert await warehouse.count_rows(merge_table.staging()) == 1

    @pytest.mark.asyncio
    async def test_failure_before_staging_check_leaves_staging_alone(self, warehouse, merge_table, monkeypatch):
        await insert_rows(warehouse, merge_table.staging().table, USERS_SCHEMA,
                          [{'ID': "Z", 'Name': "other run", 'Score': 1, 'Updated': ts(1)}])
        count_rows = warehouse.count_rows

        async def failing_count(ref):
            if ref == merge_table:
                raise TransportError("count failed")
            return await count_rows(ref)

        monkeypatch.setattr(warehouse, "count_rows", failing_count)
        result = await self._sync(warehouse, [doc("C", "c")])

        assert not result.success
        assert isinstance(result.error, TransportError)
        assert result.cleanup_errors == []
        assert await count_rows(merge_table.staging()) == 1

    @pytest.mark.asyncio
    async def test_skipped_row_is_reported_by_source_id(self, warehouse, merge_table, caplog):
        caplog.set_level(logging.WARNING)

        def mismatched(document):
            row = to_user(document)
            row['ID'] = "row-" + document['_id']
            row['Score'] = "not a number"
            return row

        result = await self._sync(warehouse, [doc("X", "x")], transform=mismatched)

        assert result.success, result.error
        assert result.stats.rows_skipped == 1
        assert "Skipping document X:" in caplog.text
        assert "Skipping document row-X" not in caplog.text

    @pytest.mark.asyncio
    async def test_transform_exception_skips_document(self, warehouse, merge_table, caplog):
        caplog.set_level(logging.WARNING)

        def flaky(document):
            if document['_id'] == "C":
                raise ValueError("bad document")
            return to_user(document)

        result = await self._sync(warehouse, [doc("A", "a"), doc("C", "c")], transform=flaky)

        assert result.success, result.error
        assert [r['ID'] for r in await fetch_rows(warehouse, MERGE_TABLE)] == ["A"]
        assert result.stats.rows_skipped == 1
        assert "Skipping document C" in caplog.text
        assert "ValueError" in caplog.text

    @pytest.mark.asyncio
    async def test_invalid_rows_are_skipped(self, warehouse, merge_table):
        def invalid(document):
            row = to_user(document)
            if document['_id'] == "A":
                row['Score'] = "not a number"
            if document['_id'] == "C":
                row['ID'] = None
            return row

        result = await self._sync(warehouse, [doc("A", "a"), doc("C", "c"), doc("D", "d")], transform=invalid)

        assert result.success, result.error
        assert [r['ID'] for r in await fetch_rows(warehouse, MERGE_TABLE)] == ["D"]
        assert result.stats.rows_skipped == 2

    @pytest.mark.asyncio
    async def test_unknown_keys_dropped_and_missing_columns_null(self, warehouse, merge_table, caplog):
        caplog.set_level(logging.WARNING)

        def sparse(document):
            return {'ID': document['_id'], 'Name': document['name'], 'Extra': 1}

        result = await self._sync(warehouse, [doc("A", "a"), doc("C", "c")], transform=sparse)

        assert result.success, result.error
        rows = await fetch_rows(warehouse, MERGE_TABLE)
        assert [(r['ID'], r['Score'], r['Updated']) for r in rows] == [("A", None, None), ("C", None, None)]
        assert caplog.text.count("Dropping column 'Extra'") == 1

    @pytest.mark.asyncio
    async def test_failed_append_commits_nothing(self, warehouse, merge_table, monkeypatch):
        await insert_rows(warehouse, MERGE_TABLE, USERS_SCHEMA, [{'ID': "A", 'Name': "a", 'Score': 1, 'Updated': ts(1)}])

        async def broken_append(self, rows, offset):
            raise TransportError("stream broken")

        monkeypatch.setattr(DuckDBWriteStream, "append", broken_append)
        result = await self._sync(warehouse, [doc("C", "c"), doc("D", "d")])

        assert not result.success
        assert isinstance(result.error, TransportError)
        assert result.cleanup_errors == []
        assert [r['ID'] for r in await fetch_rows(warehouse, MERGE_TABLE)] == ["A"]
        assert await warehouse.count_rows(merge_table.staging()) == 0

    @pytest.mark.asyncio
    async def test_cleanup_errors_are_recorded_not_raised(self, warehouse, merge_table, monkeypatch):
        async def broken_append(self, rows, offset):
            raise TransportError("stream broken")

        monkeypatch.setattr(DuckDBWriteStream, "append", broken_append)
        warehouse.drain = AsyncMock(side_effect=RuntimeError("drain failed"))

        result = await self._sync(warehouse, [doc("C", "c")])

        assert not result.success
        assert isinstance(result.error, TransportError)
        assert result.cleanup_errors == ["drain staging: RuntimeError: drain failed"]
        assert result.to_summary()['cleanup_errors'] == result.cleanup_errors

    @pytest.mark.asyncio
    async def test_source_error_fails_run(self, warehouse, merge_table):
        async def documents():
            yield doc("A", "a")
            raise ValueError("cursor lost")

        source = IterableSource(documents())
        engine = SyncEngine(warehouse, MERGE_TABLE, batch_size=1, progress_interval=0)
        result = await engine.sync(source, to_user)

        assert not result.success
        assert isinstance(result.error, ValueError)
        assert source._closed
        assert await warehouse.count_rows(merge_table) == 0
        assert await warehouse.count_rows(merge_table.staging()) == 0

    @pytest.mark.asyncio
    async def test_missing_table_is_a_configuration_error(self, warehouse):
        engine = SyncEngine(warehouse, "nowhere", progress_interval=0)
        source = IterableSource([doc("A", "a")])

        result = await engine.sync(source, to_user)

        assert not result.success
        assert isinstance(result.error, ConfigurationError)
        assert result.strategy is None
        assert source._closed

    @pytest.mark.asyncio
    async def test_progress_is_logged_while_reading(self, warehouse, merge_table, caplog):
        caplog.set_level(logging.INFO)

        async def slow_documents():
            for identity in ("A", "C", "D"):
                await asyncio.sleep(0.05)
                yield doc(identity, identity.lower())

        callback = Mock()
        engine = SyncEngine(warehouse, MERGE_TABLE, batch_size=1, progress_interval=0.01,
                            progress_callback=callback)
        result = await engine.sync(IterableSource(slow_documents()), to_user)

        assert result.success, result.error
        assert "rows read" in caplog.text
        assert "outstanding writes" in caplog.text
        assert callback.call_count >= 3

    @pytest.mark.asyncio
    async def test_summary_shape(self, warehouse, merge_table):
        result = await self._sync(warehouse, [doc("A", "a")])
        summary = result.to_summary()

        assert summary['success'] is True
        assert summary['table'] == "main.users"
        assert summary['strategy'] == "merge"
        assert summary['duration'].endswith("s")
        assert summary['stats']['rows_written'] == 1
        assert 'error' not in summary


class TestDedupeSync:

    async def _sync(self, warehouse, documents):
        engine = SyncEngine(warehouse, DEDUPE_TABLE, progress_interval=0)
        return await engine.sync(IterableSource(documents), to_event)

    @pytest.mark.asyncio
    async def test_two_runs_leave_one_row_with_later_watermark(self, warehouse, dedupe_table):
        first = await self._sync(warehouse, [doc("A", "a")])
        assert first.success, first.error
        assert first.strategy == ReconcileStrategy.DEDUPE
        [row_one] = await fetch_rows(warehouse, DEDUPE_TABLE)

        second = await self._sync(warehouse, [doc("A", "a")])
        assert second.success, second.error
        rows = await fetch_rows(warehouse, DEDUPE_TABLE)

        assert len(rows) == 1
        assert rows[0]['_sync_time'] > row_one['_sync_time']
        assert second.stats.rows_reconciled == 1

    @pytest.mark.asyncio
    async def test_duplicates_within_a_run_keep_last_written(self, warehouse, dedupe_table):
        result = await self._sync(warehouse, [doc("A", "first"), doc("B", "b"), doc("A", "second")])

        assert result.success, result.error
        rows = await fetch_rows(warehouse, DEDUPE_TABLE)
        assert [(r['ID'], r['Name']) for r in rows] == [("A", "second"), ("B", "b")]

    @pytest.mark.asyncio
    async def test_entities_missing_from_source_are_kept(self, warehouse, dedupe_table):
        await self._sync(warehouse, [doc("A", "a"), doc("B", "b")])
        await self._sync(warehouse, [doc("B", "b")])

        rows = await fetch_rows(warehouse, DEDUPE_TABLE)
        assert [r['ID'] for r in rows] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_reads_table_metadata_once(self, warehouse, dedupe_table, monkeypatch):
        get_table_metadata = warehouse.get_table_metadata
        fetched = []

        async def counting(ref, **kwargs):
            fetched.append(ref)
            return await get_table_metadata(ref, **kwargs)

        monkeypatch.setattr(warehouse, "get_table_metadata", counting)
        result = await self._sync(warehouse, [doc("A", "a")])

        assert result.success, result.error
        assert fetched == [dedupe_table]

    @pytest.mark.asyncio
    async def test_rows_without_provenance_are_deduplicated(self, warehouse):
        schema = TableSchema([TableField(f.name, f.field_type) for f in EVENTS_SCHEMA.fields])
        ref = warehouse.table_ref("legacy_events")
        await warehouse.create_table(ref, schema)
        await insert_rows(warehouse, ref.table, schema, [
            {'ID': "A", 'Name': "legacy", 'Updated': ts(1), '_uuid': None, '_sync_time': None},
            {'ID': "B", 'Name': "legacy-b", 'Updated': ts(1), '_uuid': None, '_sync_time': None},
        ])

        engine = SyncEngine(warehouse, ref.table, progress_interval=0)
        result = await engine.sync(IterableSource([doc("A", "a")]), to_event)

        assert result.success, result.error
        assert result.strategy == ReconcileStrategy.DEDUPE
        rows = await fetch_rows(warehouse, ref.table)
        assert [(r['ID'], r['Name']) for r in rows] == [("A", "a"), ("B", "legacy-b")]
        assert all(r['_uuid'] and r['_sync_time'] for r in rows)
        assert rows[1]['_sync_time'] == naive(LEGACY_SYNC_TIME)


class TestHelpers:

    @pytest.mark.asyncio
    async def test_sync_rows_to_table(self, warehouse, merge_table):
        rows = [
            {'ID': "A", 'Name': "a", 'Score': 1, 'Updated': ts(1)},
            {'ID': "B", 'Name': "b", 'Score': 2, 'Updated': ts(1)},
        ]
        result = await sync_rows_to_table(warehouse, MERGE_TABLE, rows, progress_interval=0)

        assert result.success, result.error
        assert await count_table_rows(warehouse, MERGE_TABLE) == 2

    @pytest.mark.asyncio
    async def test_push_rows_appends_without_reconciliation(self, warehouse, merge_table):
        rows = [
            {'ID': "A", 'Name': "a", 'Score': 1, 'Updated': ts(1)},
            {'ID': "A", 'Name': "again", 'Score': 2, 'Updated': ts(2)},
            {'ID': "B", 'Name': "b", 'Score': "bad", 'Updated': ts(1)},
        ]
        written = await push_rows_to_table(warehouse, MERGE_TABLE, rows)

        assert written == 2
        assert await count_table_rows(warehouse, MERGE_TABLE) == 2
        assert await warehouse.count_rows(merge_table.staging()) == 0

    @pytest.mark.asyncio
    async def test_push_rows_stamps_provenance(self, warehouse, dedupe_table):
        written = await push_rows_to_table(warehouse, DEDUPE_TABLE, [
            {'ID': "A", 'Name': "a", 'Updated': ts(1)},
            {'ID': "B", 'Name': "b", 'Updated': ts(1)},
        ])

        assert written == 2
        rows = await fetch_rows(warehouse, DEDUPE_TABLE)
        assert all(r['_uuid'] and r['_sync_time'] for r in rows)
        assert len({r['_sync_time'] for r in rows}) == 1

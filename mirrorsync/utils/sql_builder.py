from typing import List, Optional, Sequence

from ..core.models import TableRef, UUID_COLUMN, SYNC_TIME_COLUMN


class SqlBuilder:
    """Builds the reconciliation statements shared by every warehouse dialect"""

    quote_char = '"'
    param_prefix = '$'

    def quote_ident(self, name: str) -> str:
        q = self.quote_char
        return f"{q}{name.replace(q, q + q)}{q}"

    def table_name(self, ref: TableRef) -> str:
        parts = [ref.dataset, ref.table]
        if ref.project:
            parts.insert(0, ref.project)
        return '.'.join(self.quote_ident(p) for p in parts)

    def param(self, name: str) -> str:
        return f"{self.param_prefix}{name}"

    def column_list(self, columns: Sequence[str], alias: Optional[str] = None) -> str:
        prefix = f"{alias}." if alias else ""
        return ', '.join(f"{prefix}{self.quote_ident(c)}" for c in columns)

    def row_fingerprint(self, alias: str, columns: Sequence[str]) -> str:
        """Deterministic text rendering of a whole row, used as the last merge tie-break"""
        raise NotImplementedError

    def count_rows(self, ref: TableRef) -> str:
        return f"SELECT COUNT(*) AS row_count FROM {self.table_name(ref)}"

    def drain(self, ref: TableRef) -> str:
        return f"DELETE FROM {self.table_name(ref)} WHERE TRUE"

    def latest_per_identity(self, staging: TableRef, columns: Sequence[str],
                            identity_column: str, updated_column: Optional[str]) -> str:
        """Keep one staged row per identity: greatest updated value, then greatest fingerprint.

        Rows without identity are excluded, so they are never inserted and
        target rows without identity are removed by the merge.
        """
        ident = self.quote_ident(identity_column)
        order_by = []
        if updated_column:
            order_by.append(f"s.{self.quote_ident(updated_column)} DESC NULLS LAST")
        order_by.append(f"{self.row_fingerprint('s', columns)} DESC")
        return (
            f"SELECT {self.column_list(columns, 's')} FROM {self.table_name(staging)} AS s\n"
            f"WHERE s.{ident} IS NOT NULL\n"
            f"QUALIFY ROW_NUMBER() OVER (PARTITION BY s.{ident} ORDER BY {', '.join(order_by)}) = 1"
        )

    def generate_uuid(self) -> str:
        raise NotImplementedError

    def backfill_provenance(self, ref: TableRef) -> str:
        """Give rows written without provenance a random _uuid and the legacy sync time.

        Such rows then rank below every row a run writes and can be deduplicated.
        """
        table = self.table_name(ref)
        row_uuid = self.quote_ident(UUID_COLUMN)
        sync_time = self.quote_ident(SYNC_TIME_COLUMN)
        return (
            f"UPDATE {table}\n"
            f"SET {row_uuid} = COALESCE({row_uuid}, {self.generate_uuid()}),\n"
            f"    {sync_time} = COALESCE({sync_time}, {self.param('legacy_sync_time')})\n"
            f"WHERE {row_uuid} IS NULL OR {sync_time} IS NULL"
        )

    def dedupe(self, ref: TableRef, identity_column: str) -> str:
        """Delete all but the most recently written row per identity rewritten at the watermark"""
        table = self.table_name(ref)
        ident = self.quote_ident(identity_column)
        row_uuid = self.quote_ident(UUID_COLUMN)
        sync_time = self.quote_ident(SYNC_TIME_COLUMN)
        return (
            f"DELETE FROM {table}\n"
            f"WHERE {row_uuid} IN (\n"
            f"  SELECT {row_uuid} FROM {table}\n"
            f"  WHERE {ident} IN (SELECT {ident} FROM {table} WHERE {sync_time} = {self.param('watermark')})\n"
            f"  QUALIFY ROW_NUMBER() OVER (PARTITION BY {ident} ORDER BY {sync_time} DESC, {row_uuid} DESC) > 1\n"
            f")"
        )

    def merge_statements(self, target: TableRef, staging: TableRef, columns: Sequence[str],
                         identity_column: str, updated_column: Optional[str]) -> List[str]:
        raise NotImplementedError


class BigQuerySqlBuilder(SqlBuilder):
    quote_char = '`'
    param_prefix = '@'

    def quote_ident(self, name: str) -> str:
        return f"`{name.replace('`', '')}`"

    def generate_uuid(self) -> str:
        return "GENERATE_UUID()"

    def row_fingerprint(self, alias: str, columns: Sequence[str]) -> str:
        return f"TO_JSON_STRING(STRUCT({self.column_list(columns, alias)}))"

    def merge_statements(self, target: TableRef, staging: TableRef, columns: Sequence[str],
                         identity_column: str, updated_column: Optional[str]) -> List[str]:
        ident = self.quote_ident(identity_column)
        source = self.latest_per_identity(staging, columns, identity_column, updated_column)
        assignments = ', '.join(f"{self.quote_ident(c)} = S.{self.quote_ident(c)}" for c in columns)
        return [
            f"MERGE {self.table_name(target)} AS T\n"
            f"USING (\n{source}\n) AS S\n"
            f"ON T.{ident} = S.{ident}\n"
            f"WHEN MATCHED THEN\n"
            f"  UPDATE SET {assignments}\n"
            f"WHEN NOT MATCHED BY TARGET THEN\n"
            f"  INSERT ({self.column_list(columns)}) VALUES ({self.column_list(columns, 'S')})\n"
            f"WHEN NOT MATCHED BY SOURCE THEN\n"
            f"  DELETE"
        ]


class DuckDBSqlBuilder(SqlBuilder):
    """
    DuckDB has no MERGE with delete-by-absence, so the merge is rendered as a
    sequence run inside one transaction:

    1. materialize the deduplicated staging rows
    2. delete target rows whose identity is absent from them
    3. delete target rows whose identity is present (the matched rows)
    4. insert every deduplicated row

    The net effect equals the single MERGE used on BigQuery.
    """

    def generate_uuid(self) -> str:
        return "CAST(gen_random_uuid() AS VARCHAR)"

    def row_fingerprint(self, alias: str, columns: Sequence[str]) -> str:
        return f"CAST(row({self.column_list(columns, alias)}) AS VARCHAR)"

    def merge_source_table(self, target: TableRef) -> str:
        return self.quote_ident(f"__merge_source_{target.table}")

    def merge_statements(self, target: TableRef, staging: TableRef, columns: Sequence[str],
                         identity_column: str, updated_column: Optional[str]) -> List[str]:
        table = self.table_name(target)
        source = self.merge_source_table(target)
        ident = self.quote_ident(identity_column)
        return [
            f"CREATE OR REPLACE TEMP TABLE {source} AS\n"
            f"{self.latest_per_identity(staging, columns, identity_column, updated_column)}",
            f"DELETE FROM {table} WHERE {ident} IS NULL OR {ident} NOT IN (SELECT {ident} FROM {source})",
            f"DELETE FROM {table} WHERE {ident} IN (SELECT {ident} FROM {source})",
            f"INSERT INTO {table} ({self.column_list(columns)}) SELECT {self.column_list(columns)} FROM {source}",
            f"DROP TABLE IF EXISTS {source}",
        ]

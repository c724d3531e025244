"""
Unit tests for the compensation synthesizer.

Tests DELETE/INSERT/UPDATE generation for INSERT/DELETE/UPDATE row changes,
literal formatting, and that applying the generated SQL restores the data.
"""

import sqlite3
from datetime import date, datetime, time, timedelta
from decimal import Decimal

import pytest

from src.flashback.models import ChangeKind, TableMetadata
from src.flashback.synthesizer import (
    CompensationSynthesizer,
    escape_string,
    format_value,
    quote_identifier,
)


class TestFormatValue:
    """Test SQL literal formatting."""

    def test_null(self):
        assert format_value(None) == "NULL"

    def test_numbers_are_unquoted(self):
        assert format_value(42) == "42"
        assert format_value(-7) == "-7"
        assert format_value(Decimal("19.99")) == "19.99"
        assert format_value(1.5) == "1.5"

    def test_bool_is_numeric(self):
        assert format_value(True) == "1"
        assert format_value(False) == "0"

    def test_string_is_quoted(self):
        assert format_value("paid") == "'paid'"

    def test_string_escaping(self):
        assert format_value("O'Brien") == "'O\\'Brien'"
        assert format_value("a\\b") == "'a\\\\b'"
        assert format_value("line1\nline2") == "'line1\\nline2'"

    def test_temporal_values(self):
        assert format_value(datetime(2024, 5, 1, 10, 0, 0)) == "'2024-05-01 10:00:00'"
        assert format_value(date(2024, 5, 1)) == "'2024-05-01'"
        assert format_value(time(10, 30)) == "'10:30:00'"

    def test_timedelta_as_time(self):
        assert format_value(timedelta(hours=25, minutes=3, seconds=4)) == "'25:03:04'"
        assert format_value(timedelta(seconds=-90)) == "'-00:01:30'"

    def test_bytes(self):
        assert format_value(b"abc") == "'abc'"
        assert format_value(b"\xff\x00") == "X'FF00'"

    def test_set_and_json(self):
        assert format_value({"b", "a"}) == "'a,b'"
        assert format_value({"k": 1}) == "'{\"k\": 1}'"

    def test_quote_identifier(self):
        assert quote_identifier("orders") == "`orders`"
        assert quote_identifier("we`ird") == "`we``ird`"

    def test_escape_string_leaves_plain_text(self):
        assert escape_string("plain text") == "plain text"


_UNESCAPES = {"0": "\0", "n": "\n", "r": "\r", "Z": "\x1a", "\\": "\\", "'": "'"}


def read_literal(literal):
    """Read a MySQL literal back the way the server does with backslash escapes on."""
    if literal == "NULL":
        return None
    if literal.startswith("X'"):
        return bytes.fromhex(literal[2:-1])
    if not literal.startswith("'"):
        return literal

    body = literal[1:-1]
    chars = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\":
            i += 1
            chars.append(_UNESCAPES[body[i]])
        else:
            assert ch != "'", f"unescaped quote in {literal}"
            chars.append(ch)
        i += 1
    return "".join(chars)


def read_time(text):
    sign = -1 if text.startswith("-") else 1
    hours, minutes, seconds = text.lstrip("-").split(":")
    return sign * timedelta(hours=int(hours), minutes=int(minutes), seconds=float(seconds))


class TestLiteralsReadBack:
    """Formatted literals must read back as the original value."""

    @pytest.mark.parametrize("value,convert", [
        ("O'Brien", str),
        ("a\\b", str),
        ("line1\nline2\r\n", str),
        ("nul\x00and ctrl-z\x1a", str),
        ("\\'", str),
        (b"\xff\x00'\\", bytes),
        ("café".encode("utf-8"), lambda text: text.encode("utf-8")),
        (datetime(2024, 5, 1, 10, 0, 0, 123456), datetime.fromisoformat),
        (date(2024, 2, 29), date.fromisoformat),
        (time(23, 59, 58, 5), time.fromisoformat),
        (timedelta(hours=838, minutes=59, seconds=59), read_time),
        (timedelta(seconds=-90, microseconds=-500000), read_time),
        (Decimal("-12.3400"), Decimal),
        (12345678901234567890, int),
        (0.1, float),
        (True, lambda text: bool(int(text))),
        (None, lambda text: text),
    ], ids=[
        "quote", "backslash", "newlines", "nul-ctrl-z", "escaped-sequence-text",
        "binary", "utf8-bytes", "datetime-micro", "date", "time-micro",
        "time-max", "time-negative-micro", "decimal-scale", "bigint", "float", "bool", "null",
    ])
    def test_value_reads_back(self, value, convert):
        assert convert(read_literal(format_value(value))) == value

    def test_decimal_keeps_scale(self):
        assert format_value(Decimal("-12.3400")) == "-12.3400"


class TestCompensationSynthesizer:
    """Test compensating statement generation."""

    @pytest.fixture
    def synthesizer(self):
        return CompensationSynthesizer()

    @pytest.fixture
    def users(self):
        return TableMetadata(columns=("id", "name", "age"), primary_keys=("id",))

    def test_insert_is_reverted_with_delete(self, synthesizer, users):
        sql = synthesizer.synthesize(ChangeKind.INSERT, "mydb", "users", users, after=(5, "a", 30))

        assert sql == "DELETE FROM `mydb`.`users` WHERE `id` = 5;"

    def test_delete_is_reverted_with_full_insert(self, synthesizer, users):
        sql = synthesizer.synthesize(ChangeKind.DELETE, "mydb", "users", users, before=(5, "a", 30))

        assert sql == "INSERT INTO `mydb`.`users` (`id`, `name`, `age`) VALUES (5, 'a', 30);"

    def test_update_restores_changed_columns_only(self, synthesizer, users):
        sql = synthesizer.synthesize(
            ChangeKind.UPDATE, "mydb", "users", users,
            before=(5, "a", 30), after=(5, "b", 30)
        )

        assert sql == "UPDATE `mydb`.`users` SET `name` = 'a' WHERE `id` = 5;"

    def test_update_locates_row_by_after_image(self, synthesizer, users):
        sql = synthesizer.synthesize(
            ChangeKind.UPDATE, "mydb", "users", users,
            before=(5, "a", 30), after=(6, "a", 30)
        )

        assert sql == "UPDATE `mydb`.`users` SET `id` = 5 WHERE `id` = 6;"

    def test_noop_update_produces_nothing(self, synthesizer, users):
        sql = synthesizer.synthesize(
            ChangeKind.UPDATE, "mydb", "users", users,
            before=(5, "a", 30), after=(5, "a", 30)
        )

        assert sql is None

    def test_composite_key_in_declared_order(self, synthesizer):
        metadata = TableMetadata(columns=("a", "b", "c"), primary_keys=("b", "a"))

        sql = synthesizer.synthesize(ChangeKind.INSERT, "mydb", "t", metadata, after=(1, 2, 3))

        assert sql == "DELETE FROM `mydb`.`t` WHERE `b` = 2 AND `a` = 1;"

    def test_table_without_primary_key_matches_all_columns(self, synthesizer):
        metadata = TableMetadata(columns=("a", "b"))

        sql = synthesizer.synthesize(ChangeKind.INSERT, "mydb", "t", metadata, after=(1, None))

        assert sql == "DELETE FROM `mydb`.`t` WHERE `a` = 1 AND `b` IS NULL;"

    def test_null_values_in_insert_and_update(self, synthesizer, users):
        insert_sql = synthesizer.synthesize(
            ChangeKind.DELETE, "mydb", "users", users, before=(5, None, 30)
        )
        update_sql = synthesizer.synthesize(
            ChangeKind.UPDATE, "mydb", "users", users,
            before=(5, None, 30), after=(5, "x", 30)
        )

        assert insert_sql == "INSERT INTO `mydb`.`users` (`id`, `name`, `age`) VALUES (5, NULL, 30);"
        assert update_sql == "UPDATE `mydb`.`users` SET `name` = NULL WHERE `id` = 5;"

    def test_short_row_image_is_truncated(self, synthesizer, users, caplog):
        sql = synthesizer.synthesize(ChangeKind.DELETE, "mydb", "users", users, before=(5, "a"))

        assert sql == "INSERT INTO `mydb`.`users` (`id`, `name`) VALUES (5, 'a');"
        assert "truncating to 2" in caplog.text

    def test_long_row_image_ignores_extra_values(self, synthesizer, users):
        sql = synthesizer.synthesize(
            ChangeKind.DELETE, "mydb", "users", users, before=(5, "a", 30, "extra")
        )

        assert sql == "INSERT INTO `mydb`.`users` (`id`, `name`, `age`) VALUES (5, 'a', 30);"

    def test_image_without_key_columns_matches_all_columns(self, synthesizer, caplog):
        metadata = TableMetadata(columns=("name", "age", "id"), primary_keys=("id",))

        delete_sql = synthesizer.synthesize(ChangeKind.INSERT, "mydb", "users", metadata, after=("a", 30))
        update_sql = synthesizer.synthesize(
            ChangeKind.UPDATE, "mydb", "users", metadata, before=("a", 31), after=("a", 30)
        )

        assert delete_sql == "DELETE FROM `mydb`.`users` WHERE `name` = 'a' AND `age` = 30;"
        assert update_sql == "UPDATE `mydb`.`users` SET `age` = 31 WHERE `name` = 'a' AND `age` = 30;"
        assert "holds no primary key column (id)" in caplog.text

    def test_key_missing_from_columns_matches_all_columns(self, synthesizer):
        metadata = TableMetadata(columns=("a", "b"), primary_keys=("c",))

        sql = synthesizer.synthesize(ChangeKind.INSERT, "mydb", "t", metadata, after=(1, 2))

        assert sql == "DELETE FROM `mydb`.`t` WHERE `a` = 1 AND `b` = 2;"

    @pytest.mark.parametrize("kind,images", [
        (ChangeKind.INSERT, {"after": ()}),
        (ChangeKind.DELETE, {"before": ()}),
        (ChangeKind.UPDATE, {"before": (), "after": ()}),
    ])
    def test_empty_row_image_produces_nothing(self, synthesizer, users, kind, images):
        assert synthesizer.synthesize(kind, "mydb", "users", users, **images) is None

    def test_every_statement_is_terminated(self, synthesizer, users):
        statements = [
            synthesizer.synthesize(ChangeKind.INSERT, "d", "t", users, after=(1, "a", 2)),
            synthesizer.synthesize(ChangeKind.DELETE, "d", "t", users, before=(1, "a", 2)),
            synthesizer.synthesize(ChangeKind.UPDATE, "d", "t", users, before=(1, "a", 2), after=(1, "b", 2)),
        ]

        assert all(sql.endswith(";") for sql in statements)


class TestCompensationRestoresData:
    """Apply original changes and their compensation to a real database."""

    COLUMNS = ("id", "name", "qty")

    @pytest.fixture
    def db(self):
        conn = sqlite3.connect(":memory:")
        conn.execute("ATTACH DATABASE ':memory:' AS mydb")
        conn.execute("CREATE TABLE mydb.items (id INTEGER PRIMARY KEY, name TEXT, qty INTEGER)")
        conn.executemany(
            "INSERT INTO mydb.items VALUES (?, ?, ?)",
            [(1, "apple", 3), (2, "pear", None), (3, "plum", 7)]
        )
        yield conn
        conn.close()

    @pytest.fixture
    def synthesizer(self):
        return CompensationSynthesizer()

    def _snapshot(self, conn):
        return conn.execute("SELECT id, name, qty FROM mydb.items ORDER BY id").fetchall()

    def _apply(self, conn, sql):
        conn.execute(sql.rstrip(";"))

    @pytest.mark.parametrize("primary_keys", [("id",), ()])
    def test_mixed_changes_are_undone(self, db, synthesizer, primary_keys):
        metadata = TableMetadata(columns=self.COLUMNS, primary_keys=primary_keys)
        original = self._snapshot(db)

        changes = [
            (ChangeKind.INSERT, None, (4, "kiwi", 1)),
            (ChangeKind.UPDATE, (1, "apple", 3), (1, "apple", 10)),
            (ChangeKind.DELETE, (3, "plum", 7), None),
            (ChangeKind.UPDATE, (2, "pear", None), (2, "pear", 5)),
        ]

        compensations = []
        for kind, before, after in changes:
            if kind is ChangeKind.INSERT:
                db.execute("INSERT INTO mydb.items VALUES (?, ?, ?)", after)
            elif kind is ChangeKind.DELETE:
                db.execute("DELETE FROM mydb.items WHERE id = ?", (before[0],))
            else:
                db.execute("UPDATE mydb.items SET name = ?, qty = ? WHERE id = ?", (after[1], after[2], after[0]))
            compensations.append(
                synthesizer.synthesize(kind, "mydb", "items", metadata, before=before, after=after)
            )

        assert self._snapshot(db) != original

        # Undo in reverse stream order
        for sql in reversed(compensations):
            self._apply(db, sql)

        assert self._snapshot(db) == original

    def test_primary_key_change_is_undone(self, db, synthesizer):
        metadata = TableMetadata(columns=self.COLUMNS, primary_keys=("id",))
        original = self._snapshot(db)

        db.execute("UPDATE mydb.items SET id = 9 WHERE id = 1")
        sql = synthesizer.synthesize(
            ChangeKind.UPDATE, "mydb", "items", metadata,
            before=(1, "apple", 3), after=(9, "apple", 3)
        )
        self._apply(db, sql)

        assert self._snapshot(db) == original

"""
Tests for pg_dump / pg_restore output classification.
"""

import pytest

from cloudsql_migrator.database.output_classifier import (
    CLASSIFIER_VERSION,
    IGNORABLE_CATEGORIES,
    LineKind,
    classify_line,
    classify_output,
)


class TestClassifyLine:

    @pytest.mark.parametrize("line", [
        "pg_dump: reading schemas",
        "pg_dump: dumping contents of table \"public.users\"",
        "pg_restore: creating TABLE \"public.orders\"",
        "pg_restore: processing data for table \"public.orders\"",
    ])
    def test_progress(self, line):
        assert classify_line(line) == (LineKind.PROGRESS, None)

    @pytest.mark.parametrize("line, category", [
        ('pg_restore: error: could not execute query: ERROR:  role "cloudsqlsuperuser" does not exist',
         "missing-role"),
        ("pg_restore: error: could not execute query: ERROR:  must be owner of extension plpgsql",
         "ownership"),
        ("WARNING:  no privileges were granted for \"public\"", "acl"),
        ("pg_restore: warning: errors ignored on restore: 3", "errors-ignored-summary"),
        ('pg_restore: [archiver (db)] could not execute query: ERROR:  role "owner" does not exist',
         "missing-role"),
    ])
    def test_ignorable_categories(self, line, category):
        assert classify_line(line) == (LineKind.IGNORABLE, category)

    @pytest.mark.parametrize("line", [
        "pg_dump: warning: there are circular foreign-key constraints on this table:",
        "NOTICE:  table \"x\" does not exist, skipping",
    ])
    def test_warnings(self, line):
        assert classify_line(line)[0] == LineKind.WARNING

    @pytest.mark.parametrize("line", [
        "Command was: CREATE TABLE public.users (id integer);",
        "DETAIL:  Key (id)=(1) already exists.",
        "pg_restore: from TOC entry 215; 1259 16390 TABLE users postgres",
        "    Command was: SET transaction_timeout = 0;",
        "pg_restore: [archiver (db)] Error from TOC entry 215; 1259 16390 TABLE users postgres",
        "pg_restore: [archiver (db)] Error while PROCESSING TOC:",
    ])
    def test_context(self, line):
        assert classify_line(line)[0] == LineKind.CONTEXT

    @pytest.mark.parametrize("line", [
        "pg_restore: error: could not execute query: ERROR:  relation \"users\" already exists",
        "pg_dump: error: connection to server failed: FATAL:  password authentication failed",
        "pg_restore: [archiver (db)] could not execute query: ERROR:  relation \"users\" already exists",
        "something nobody anticipated",
    ])
    def test_unmatched_error_is_fatal(self, line):
        assert classify_line(line)[0] == LineKind.FATAL


class TestClassifyOutput:

    def test_versioned_categories(self):
        names = [category.name for category in IGNORABLE_CATEGORIES]

        assert CLASSIFIER_VERSION
        assert len(names) == len(set(names))
        assert "missing-role" in names

    def test_clean_run(self):
        result = classify_output(["pg_dump: reading schemas", "", "pg_dump: saving encoding"], 0)

        assert result.is_fatal is False
        assert len(result.progress_lines) == 2

    def test_ignorable_errors_with_nonzero_exit_are_not_fatal(self):
        result = classify_output([
            'pg_restore: error: could not execute query: ERROR:  role "owner" does not exist',
            "Command was: ALTER TABLE public.t OWNER TO owner;",
            "pg_restore: warning: errors ignored on restore: 1",
        ], exit_code=1)

        assert result.is_fatal is False
        assert result.ignored_by_category == {"missing-role": 1, "errors-ignored-summary": 1}

    def test_unmatched_error_is_fatal_despite_ignorable_lines(self):
        result = classify_output([
            'pg_restore: error: could not execute query: ERROR:  role "owner" does not exist',
            "pg_restore: error: could not execute query: ERROR:  out of shared memory",
        ], exit_code=1)

        assert result.is_fatal is True
        assert result.fatal_lines == ["pg_restore: error: could not execute query: ERROR:  out of shared memory"]

    def test_nonzero_exit_without_explanation_is_fatal(self):
        assert classify_output(["pg_dump: reading schemas"], exit_code=1).is_fatal is True

    def test_session_parameter_requires_set_context(self):
        ignorable = classify_output([
            'pg_restore: error: could not execute query: ERROR:  unrecognized configuration parameter "transaction_timeout"',
            "Command was: SET transaction_timeout = 0;",
        ], exit_code=1)
        fatal = classify_output([
            'pg_restore: error: could not execute query: ERROR:  unrecognized configuration parameter "transaction_timeout"',
            "Command was: ALTER DATABASE x SET transaction_timeout = 0;",
        ], exit_code=1)

        assert ignorable.is_fatal is False
        assert ignorable.ignored_by_category == {"session-parameter": 1}
        assert fatal.is_fatal is True

    def test_carriage_returns_stripped(self):
        result = classify_output(["pg_dump: reading schemas\r\n"], 0)

        assert result.lines[0].text == "pg_dump: reading schemas"

    def test_pre_12_restore_output(self):
        result = classify_output([
            "pg_restore: [archiver (db)] Error while PROCESSING TOC:",
            "pg_restore: [archiver (db)] Error from TOC entry 3; 0 0 SET transaction_timeout",
            'pg_restore: [archiver (db)] could not execute query: ERROR:  unrecognized configuration parameter "transaction_timeout"',
            "    Command was: SET transaction_timeout = 0;",
            "pg_restore: [archiver (db)] could not execute query: ERROR:  out of shared memory",
            "    Command was: CREATE INDEX idx ON public.t (id);",
        ], exit_code=1)

        assert result.ignored_by_category == {"session-parameter": 1}
        assert result.fatal_lines == [
            "pg_restore: [archiver (db)] could not execute query: ERROR:  out of shared memory"
        ]
        assert result.progress_lines == []

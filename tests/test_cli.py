"""Tests for clusterplane.cli — command line interface."""

import stat
from unittest.mock import MagicMock, patch

import psycopg2

from clusterplane.cli import REQUIRED_TABLES, _find_migration_sql, main
from clusterplane.vault.crypto import KEY_FILENAME, KEY_SIZE


class TestCli:
    def test_version(self, capsys):
        rc = main(["version"])
        assert rc == 0
        out = capsys.readouterr().out
        assert "clusterplane" in out
        assert "0.1.0" in out

    def test_version_flag(self, capsys):
        assert main(["--version"]) == 0
        assert "clusterplane" in capsys.readouterr().out

    def test_no_args(self, capsys):
        assert main([]) == 0
        assert "keygen" in capsys.readouterr().out

    def test_status_unreachable_db(self, capsys, clean_env, monkeypatch, tmp_path):
        monkeypatch.setenv("CLUSTERPLANE_WORKSPACE", str(tmp_path))
        monkeypatch.setenv("AWS_ACCESS_KEY_ID", "AKIA")
        monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "s")
        with patch("psycopg2.connect", side_effect=psycopg2.OperationalError("refused")):
            rc = main(["status"])
        assert rc == 0
        out = capsys.readouterr().out
        assert "UNREACHABLE" in out
        assert "MISSING" in out
        assert "aws     configured" in out
        assert "gcp     not set" in out


class TestKeygen:
    def test_creates_key(self, capsys, tmp_path):
        rc = main(["keygen", "--workspace", str(tmp_path)])
        assert rc == 0
        key_path = tmp_path / KEY_FILENAME
        assert len(key_path.read_bytes()) == KEY_SIZE
        assert stat.S_IMODE(key_path.stat().st_mode) == 0o600
        assert "written" in capsys.readouterr().out

    def test_keeps_existing_key(self, capsys, tmp_path):
        main(["keygen", "--workspace", str(tmp_path)])
        first = (tmp_path / KEY_FILENAME).read_bytes()
        capsys.readouterr()

        main(["keygen", "--workspace", str(tmp_path)])
        assert (tmp_path / KEY_FILENAME).read_bytes() == first
        assert "already present" in capsys.readouterr().out


class TestMigrate:
    def test_find_migration_sql(self):
        sql = _find_migration_sql()
        assert sql is not None
        for table in REQUIRED_TABLES:
            assert f"CREATE TABLE IF NOT EXISTS {table}" in sql

    def test_dry_run(self, capsys):
        assert main(["migrate", "--dry-run"]) == 0
        assert "CREATE TABLE" in capsys.readouterr().out

    def test_check_missing_tables(self, capsys, clean_env):
        mock_cur = MagicMock()
        mock_cur.fetchall.return_value = [("credentials",)]
        mock_conn = MagicMock()
        mock_conn.cursor.return_value.__enter__ = MagicMock(return_value=mock_cur)
        mock_conn.cursor.return_value.__exit__ = MagicMock(return_value=False)

        with patch("psycopg2.connect", return_value=mock_conn):
            rc = main(["migrate", "--check"])
        assert rc == 1
        assert "clusters" in capsys.readouterr().out

    def test_check_all_present(self, capsys, clean_env):
        mock_cur = MagicMock()
        mock_cur.fetchall.return_value = [(t,) for t in REQUIRED_TABLES]
        mock_conn = MagicMock()
        mock_conn.cursor.return_value.__enter__ = MagicMock(return_value=mock_cur)
        mock_conn.cursor.return_value.__exit__ = MagicMock(return_value=False)

        with patch("psycopg2.connect", return_value=mock_conn):
            assert main(["migrate", "--check"]) == 0
        assert "All 2 required tables present." in capsys.readouterr().out

    def test_migration_failure(self, capsys, clean_env):
        with patch("psycopg2.connect", side_effect=psycopg2.OperationalError("no server")):
            assert main(["migrate"]) == 1
        assert "Migration failed" in capsys.readouterr().out

import pytest

from albumizer.cli import EXIT_CONFIG, EXIT_OK, build_parser, main, settings_from_args


@pytest.fixture(autouse=True)
def _no_user_config(monkeypatch, tmp_path):
    monkeypatch.delenv("ALBUMIZER_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)


def test_flags_override_config(tmp_path):
    cfg = tmp_path / "custom.toml"
    cfg.write_text('[run]\nworkers = 2\ndry_run = false\n[paths]\noutput = "from-config"\n', encoding="utf-8")
    args = build_parser().parse_args(["--config", str(cfg), "-o", "elsewhere", "-n", "--no-comments"])
    s = settings_from_args(args)
    assert s.workers == 2
    assert s.dry_run is True
    assert s.include_comments is False
    assert s.output.name == "elsewhere"


def test_unset_flags_leave_config_alone(tmp_path):
    cfg = tmp_path / "custom.toml"
    cfg.write_text("[run]\nskip_videos = true\ninclude_comments = false\n", encoding="utf-8")
    s = settings_from_args(build_parser().parse_args(["--config", str(cfg)]))
    assert s.skip_videos is True
    assert s.include_comments is False


def test_main_runs_an_export(export, make_jpeg, tmp_path):
    export.add_file("p/1.jpg", make_jpeg())
    export.add_manifest("a.json", {"name": "A", "photos": [{"uri": "p/1.jpg", "creation_timestamp": 1609459200}]})
    out = tmp_path / "albums"
    assert main(["-i", str(export.root), "-o", str(out), "-q"]) == EXIT_OK
    assert (out / "A" / "1.jpg").exists()


def test_main_writes_a_log_file(export, tmp_path):
    logs = tmp_path / "logs"
    assert main(["-i", str(export.root), "-o", str(tmp_path / "o"), "-q", "--logs-dir", str(logs)]) == EXIT_OK
    assert len(list(logs.glob("albumizer-*.log"))) == 1


def test_missing_export_root_exits_2(tmp_path, capsys):
    assert main(["-i", str(tmp_path / "missing"), "-q"]) == EXIT_CONFIG
    assert "FATAL" in capsys.readouterr().err


def test_bad_workers_exits_2(export):
    assert main(["-i", str(export.root), "--workers", "0", "-q"]) == EXIT_CONFIG

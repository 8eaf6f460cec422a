import json

import pytest

from kmem.cli import main


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "kmem.yaml"
    path.write_text(f"store:\n  path: {tmp_path / 'cli.db'}\n", encoding="utf-8")
    return str(path)


def _package(tmp_path, *titles):
    path = tmp_path / "package.json"
    memories = [
        {"level": "library", "library_name": "std", "title": title, "content": f"{title} body"}
        for title in titles
    ]
    path.write_text(json.dumps({"version": "1.0", "memories": memories}), encoding="utf-8")
    return str(path)


def test_import_previews_without_yes(tmp_path, config_path, capsys):
    main(["--config", config_path, "import", _package(tmp_path, "Foo")])
    out = capsys.readouterr().out
    assert "to_add=1" in out
    assert "Preview only" in out

    main(["--config", config_path, "list"])
    assert "0 of 0" in capsys.readouterr().out


def test_import_export_round_trip(tmp_path, config_path, capsys):
    main(["--config", config_path, "import", _package(tmp_path, "Foo", "Bar"), "--yes"])
    assert "added=2" in capsys.readouterr().out

    out_file = tmp_path / "export.json"
    main(["--config", config_path, "export", "--out", str(out_file)])
    exported = json.loads(out_file.read_text(encoding="utf-8"))
    assert {item["title"] for item in exported["memories"]} == {"Foo", "Bar"}

    main(["--config", config_path, "import", str(out_file), "--strategy", "skip", "--yes"])
    assert "skipped=2" in capsys.readouterr().out


def test_errors_exit_nonzero(tmp_path, config_path, capsys):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"version": "2.0", "memories": []}), encoding="utf-8")
    with pytest.raises(SystemExit) as exc:
        main(["--config", config_path, "import", str(path)])
    assert exc.value.code == 1
    assert "unsupported_package_version" in capsys.readouterr().err


def test_import_reports_malformed_candidate(tmp_path, config_path, capsys):
    path = tmp_path / "bad_level.json"
    memories = [{"level": "module", "title": "T", "content": "c"}]
    path.write_text(json.dumps({"version": "1.0", "memories": memories}), encoding="utf-8")
    with pytest.raises(SystemExit) as exc:
        main(["--config", config_path, "import", str(path)])
    assert exc.value.code == 1
    err = capsys.readouterr().err
    assert "malformed_candidate" in err
    assert "candidate #0" in err


def test_import_reports_unreadable_file(tmp_path, config_path, capsys):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(SystemExit) as exc:
        main(["--config", config_path, "import", str(path)])
    assert exc.value.code == 1
    assert "invalid_request" in capsys.readouterr().err

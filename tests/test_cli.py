"""Tests for the database-free CLI commands."""

from commission_engine.cli import CommissionCli


def test_no_command_prints_help(capsys):
    assert CommissionCli().run([]) == 1
    assert "commission-engine" in capsys.readouterr().out


def test_check_template_valid(tmp_path, capsys):
    path = tmp_path / "bonus.tpl"
    path.write_text(
        "<% rate = 0.1 if sum('REVENUE') > 1000 else 0.05 %>"
        "<%= emit_commission(label='Bonus', amount=sum_dr('revenue') * rate) %>",
        encoding="utf-8",
    )

    code = CommissionCli().run(["check-template", str(path), "--name", "Team_Bonus"])

    out = capsys.readouterr().out
    assert code == 0
    assert "is valid" in out
    assert "Source inputs: REVENUE, revenue" in out


def test_check_template_blocked(tmp_path, capsys):
    path = tmp_path / "evil.tpl"
    path.write_text("<%= require('child_process') %>", encoding="utf-8")

    code = CommissionCli().run(["check-template", str(path)])

    out = capsys.readouterr().out
    assert code == 1
    assert "is invalid" in out
    assert "keyword: require" in out


def test_check_template_bad_name(tmp_path, capsys):
    path = tmp_path / "ok.tpl"
    path.write_text("<%= 1 %>", encoding="utf-8")

    code = CommissionCli().run(["check-template", str(path), "--name", "9lives"])

    assert code == 1
    assert "Invalid name" in capsys.readouterr().out


def test_check_template_missing_file(tmp_path, capsys):
    code = CommissionCli().run(["check-template", str(tmp_path / "missing.tpl")])

    assert code == 1
    assert "Cannot read" in capsys.readouterr().err

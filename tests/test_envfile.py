import os

import pytest

from dro import envfile
from dro.envfile import EnvironmentConfig
from dro.errors import ConfigError


OVERRIDES = {
    "DJANGO_ALLOWED_HOSTS": "localhost,127.0.0.1,203.0.113.7",
    "DATABASE_URL": "sqlite:////data/db.sqlite3",
}


def test_creates_file_from_bundled_sample(tmp_path):
    path = str(tmp_path / ".env")

    cfg = envfile.reconcile(path, {"DJANGO_SECRET_KEY": "s3cr3t-generated"}, OVERRIDES)

    assert os.path.exists(path)
    assert cfg.get("DJANGO_SECRET_KEY") == "s3cr3t-generated"
    assert cfg.get("DJANGO_ALLOWED_HOSTS") == "localhost,127.0.0.1,203.0.113.7"
    assert cfg.violations() == []
    assert oct(os.stat(path).st_mode & 0o777) == oct(0o600)


def test_prefers_operator_template(tmp_path):
    path = str(tmp_path / ".env")
    template = tmp_path / ".env.template"
    template.write_text("# from template\nEXTRA=1\nDJANGO_SECRET_KEY=your-super-secret-key\n")

    cfg = envfile.reconcile(path, {"DJANGO_SECRET_KEY": "generated"}, OVERRIDES, template=str(template))

    text = open(path).read()
    assert text.startswith("# from template\nEXTRA=1\n")
    assert cfg.get("DJANGO_SECRET_KEY") == "generated"


def test_reconcile_is_idempotent(tmp_path):
    path = str(tmp_path / ".env")
    envfile.reconcile(path, {"DJANGO_SECRET_KEY": "first"}, OVERRIDES)
    first = open(path).read()

    # A fresh default must not replace the key on the second run.
    cfg = envfile.plan(path, {"DJANGO_SECRET_KEY": "second"}, OVERRIDES)
    assert cfg.write(path) is False
    assert open(path).read() == first


def test_overrides_win_and_unrelated_keys_keep_their_place(tmp_path):
    path = tmp_path / ".env"
    path.write_text(
        "A=1\n"
        "# comment stays\n"
        "DJANGO_ALLOWED_HOSTS=stale.example.com\n"
        "B=2\n"
        "DATABASE_URL=postgres://hand-edited\n"
        "DJANGO_SECRET_KEY=kept\n"
        "DJANGO_ALLOWED_HOSTS=duplicate\n"
    )

    cfg = envfile.reconcile(str(path), {"DJANGO_SECRET_KEY": "ignored"}, OVERRIDES)

    assert path.read_text().splitlines() == [
        "A=1",
        "# comment stays",
        "DJANGO_ALLOWED_HOSTS=localhost,127.0.0.1,203.0.113.7",
        "B=2",
        "DATABASE_URL=sqlite:////data/db.sqlite3",
        "DJANGO_SECRET_KEY=kept",
    ]
    assert cfg.keys() == ["A", "DJANGO_ALLOWED_HOSTS", "B", "DATABASE_URL", "DJANGO_SECRET_KEY"]


def test_keys_are_case_sensitive():
    cfg = EnvironmentConfig.parse("database_url=lower\n")
    cfg.set("DATABASE_URL", "upper")
    assert cfg.render() == "database_url=lower\nDATABASE_URL=upper\n"


def test_placeholder_secret_is_reported(tmp_path):
    path = tmp_path / ".env"
    path.write_text("DJANGO_SECRET_KEY=CHANGE_ME\n")

    cfg = envfile.reconcile(str(path), {"DJANGO_SECRET_KEY": "generated"}, OVERRIDES)

    # Existing operator file: placeholder is left alone and reported.
    assert cfg.get("DJANGO_SECRET_KEY") == "CHANGE_ME"
    with pytest.raises(ConfigError) as exc:
        cfg.check_required()
    assert exc.value.keys == ["DJANGO_SECRET_KEY"]


def test_placeholder_inside_host_list_counts():
    cfg = EnvironmentConfig.parse(
        "DJANGO_SECRET_KEY=x\nDJANGO_ALLOWED_HOSTS=localhost,your-domain.com\nDATABASE_URL=sqlite:////data/db.sqlite3\n"
    )
    assert cfg.violations() == ["DJANGO_ALLOWED_HOSTS"]


def test_atomic_write_leaves_no_temp_files(tmp_path):
    path = str(tmp_path / ".env")
    envfile.reconcile(path, {"DJANGO_SECRET_KEY": "k"}, OVERRIDES)
    envfile.reconcile(path, {}, {"DJANGO_ALLOWED_HOSTS": "localhost"})

    assert sorted(os.listdir(tmp_path)) == [".env"]

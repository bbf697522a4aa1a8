import os
import string
import subprocess
import sys
from pathlib import Path

from dotenv import dotenv_values
from jose import jwt

import main
from generate_key import generate_secret_key, write_secret_key

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def test_generated_key_signs_tokens(monkeypatch):
    key = generate_secret_key()

    assert len(key) == 64
    assert set(key) <= set(string.hexdigits)
    assert generate_secret_key() != key

    monkeypatch.setattr(main, "SECRET_KEY", key)
    token = main.create_access_token({"sub": "alice"})
    assert jwt.decode(token, key, algorithms=[main.ALGORITHM])["sub"] == "alice"


def test_write_secret_key_keeps_other_settings(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("DATABASE_URL=sqlite://\nSECRET_KEY=old\n")

    key = write_secret_key(env_file)

    values = dotenv_values(env_file)
    assert values["SECRET_KEY"] == key
    assert values["DATABASE_URL"] == "sqlite://"


def test_write_secret_key_creates_env_file(tmp_path):
    env_file = tmp_path / ".env"

    key = write_secret_key(env_file)

    assert dotenv_values(env_file) == {"SECRET_KEY": key}


def test_api_refuses_to_start_without_secret_key(tmp_path):
    # load_dotenv never overrides a variable that is already set, even an empty one
    env = dict(os.environ, SECRET_KEY="", DATABASE_URL="sqlite://", LOG_FILE="",
               PYTHONPATH=str(PROJECT_ROOT))

    proc = subprocess.run([sys.executable, "-c", "import main"], cwd=tmp_path, env=env,
                          capture_output=True, text=True, timeout=60)

    assert proc.returncode != 0
    assert "SECRET_KEY environment variable not set" in proc.stderr

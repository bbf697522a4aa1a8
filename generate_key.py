"""Create the SECRET_KEY that signs JusPost session tokens.

The API refuses to start without one. Run with ``--write`` to store the key
in ``.env`` next to the other settings instead of only printing it.
"""
import secrets
import sys
from pathlib import Path

from dotenv import set_key

KEY_NAME = "SECRET_KEY"


def generate_secret_key() -> str:
    """Return a new 64-character hex key"""
    return secrets.token_hex(32)


def write_secret_key(env_file: str | Path = ".env") -> str:
    """Generate a key and save it as SECRET_KEY in env_file, creating the file if needed"""
    env_path = Path(env_file)
    env_path.touch(exist_ok=True)
    key = generate_secret_key()
    set_key(str(env_path), KEY_NAME, key)
    return key


if __name__ == "__main__":
    if "--write" in sys.argv[1:]:
        write_secret_key()
        print(f"{KEY_NAME} written to .env")
    else:
        print(f"Generated {KEY_NAME}:", generate_secret_key())

import os
from pathlib import Path
from typing import Optional, Tuple

_QUOTES = ("'", '"')


def parse_env_line(line: str) -> Optional[Tuple[str, str]]:
    """``KEY=value`` from one .env line, or None for blanks and comments."""
    s = line.strip()
    if s.startswith("export "):
        s = s[len("export "):]
    key, sep, value = s.partition("=")
    key = key.strip()
    if not sep or not key or key.startswith("#"):
        return None
    value = value.strip()
    if len(value) >= 2 and value[0] in _QUOTES and value[-1] == value[0]:
        value = value[1:-1]
    return key, value


def load_env_file(path: Path) -> None:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return
    for line in text.splitlines():
        parsed = parse_env_line(line)
        # Real environment wins over the file
        if parsed and parsed[0] not in os.environ:
            os.environ[parsed[0]] = parsed[1]


# Tests configure the gateway explicitly
if not (os.getenv("PYTEST_CURRENT_TEST") or os.getenv("GATEWAY_SKIP_DOTENV")):
    load_env_file(Path(os.getenv("GATEWAY_ENV_FILE", ".env")))

"""Account credential rules and the credentials env file format.

The env file holds ``KEY="value"`` lines read by systemd ``EnvironmentFile=``,
which hands the unquoted values to the agent units and the management service.
"""

import re

USERNAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
USERNAME_MAX_LENGTH = 64
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 256

USERNAME_KEY = "OPENCODE_SERVER_USERNAME"
PASSWORD_KEY = "OPENCODE_SERVER_PASSWORD"
TTYD_KEY = "TTYD_CREDENTIAL"

# Characters systemd unescapes inside a double-quoted EnvironmentFile= value
_ENV_ESCAPED = "\"\\`$"


def validate_username(username: str) -> str:
    if not username:
        raise ValueError("Username is required")
    if len(username) > USERNAME_MAX_LENGTH or not USERNAME_RE.match(username):
        raise ValueError(
            "Username can only contain letters, numbers, hyphens, and underscores "
            f"(max {USERNAME_MAX_LENGTH} characters)"
        )
    return username


def validate_password(password: str) -> str:
    if not PASSWORD_MIN_LENGTH <= len(password) <= PASSWORD_MAX_LENGTH:
        raise ValueError(
            f"Password must be {PASSWORD_MIN_LENGTH}-{PASSWORD_MAX_LENGTH} characters"
        )
    # Control characters would break the env file and unit syntax.
    if any(ord(ch) < 32 or ord(ch) == 127 for ch in password):
        raise ValueError("Password contains invalid characters")
    return password


def credential_values(username: str, password: str) -> dict[str, str]:
    return {
        USERNAME_KEY: username,
        PASSWORD_KEY: password,
        TTYD_KEY: f"{username}:{password}",
    }


def quote_env_value(value: str) -> str:
    """Double-quote a value the way systemd's EnvironmentFile= unquotes it."""
    escaped = "".join(f"\\{ch}" if ch in _ENV_ESCAPED else ch for ch in value)
    return f'"{escaped}"'


def unquote_env_value(raw: str) -> str:
    raw = raw.strip()
    if len(raw) < 2 or raw[0] != '"' or raw[-1] != '"':
        return raw
    out = []
    chars = iter(raw[1:-1])
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, "")
        # systemd keeps a backslash that does not precede an escapable character
        if not nxt or nxt not in _ENV_ESCAPED:
            out.append("\\")
        out.append(nxt)
    return "".join(out)


def render_env_file(username: str, password: str) -> str:
    return "".join(
        f"{key}={quote_env_value(value)}\n" for key, value in credential_values(username, password).items()
    )


def update_env_file(content: str, username: str, password: str) -> str:
    """Replace the credential keys in an existing env file, keeping other lines."""
    values = credential_values(username, password)
    lines = []
    for line in content.splitlines():
        key = line.split("=", 1)[0]
        if key in values:
            lines.append(f"{key}={quote_env_value(values.pop(key))}")
        else:
            lines.append(line)
    lines.extend(f"{key}={quote_env_value(value)}" for key, value in values.items())
    return "\n".join(lines) + "\n"


def parse_env_file(content: str) -> dict[str, str]:
    parsed = {}
    for line in content.splitlines():
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        parsed[key.strip()] = unquote_env_value(value)
    return parsed

"""Dotted connector overrides (`--src.<path> <value>`, `--dst.<path> <value>`).

cyclopts cannot declare options with arbitrary dotted names, so they are split
out of argv first and handed back as hidden `--src-override path=value` options.
"""

from airlocal.domain.shared.error import ConfigInvalid

_PREFIXES = {"--src.": "src", "--dst.": "dst"}


def split_connector_overrides(tokens: list[str]) -> tuple[list[str], list[tuple[str, str]], list[tuple[str, str]]]:
    """Separate dotted overrides from the rest of the arguments.

    Both `--src.config.port 5432` and `--src.config.port=5432` are accepted.
    Argument order is preserved within each role.

    Returns:
        (remaining tokens, src overrides, dst overrides), overrides as (path, raw value).

    Raises:
        ConfigInvalid: If an override has no value or an empty path.
    """
    remaining: list[str] = []
    overrides: dict[str, list[tuple[str, str]]] = {"src": [], "dst": []}

    i = 0
    while i < len(tokens):
        token = tokens[i]
        prefix = next((p for p in _PREFIXES if token.startswith(p)), None)
        if prefix is None:
            remaining.append(token)
            i += 1
            continue

        path, sep, value = token[len(prefix) :].partition("=")
        if not sep:
            if i + 1 >= len(tokens):
                raise ConfigInvalid(f"Missing value for option {token}", field=token)
            value = tokens[i + 1]
            i += 1
        if not path:
            raise ConfigInvalid(f"Invalid option {token}", field=token)
        overrides[_PREFIXES[prefix]].append((path, value))
        i += 1

    return remaining, overrides["src"], overrides["dst"]


def as_cli_options(src: list[tuple[str, str]], dst: list[tuple[str, str]]) -> list[str]:
    """Re-encode overrides as hidden options understood by the sync command."""
    return [f"--src-override={path}={value}" for path, value in src] + [
        f"--dst-override={path}={value}" for path, value in dst
    ]


def parse_cli_overrides(values: list[str] | None) -> list[tuple[str, str]]:
    """Inverse of `as_cli_options` for one role."""
    pairs = []
    for item in values or []:
        path, _, value = item.partition("=")
        pairs.append((path, value))
    return pairs

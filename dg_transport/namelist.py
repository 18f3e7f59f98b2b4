"""Parser for the Fortran-style namelist files that configure a transport run.

Supported subset:
- groups opened with ``&name`` and closed with ``/`` (or ``&end``),
- ``!`` comments outside quoted strings,
- scalars, whitespace/comma separated lists and ``n*value`` repeat counts,
- Fortran logicals (``.true.``, ``T``, ...) and ``D`` exponents,
- indexed assignments ``key(i) = value``.

Group names are case-insensitive and stored lower-case; keys are stored upper-case.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Tuple, Union

Number = Union[int, float]
Scalar = Union[str, bool, Number]
Value = Union[Scalar, List[Scalar]]


_GROUP_START_RE = re.compile(r"^\s*&\s*(?P<name>[A-Za-z_]\w*)\s*(?P<rest>.*)$")
_GROUP_END_RE = re.compile(r"^\s*(/|&\s*end)\s*$", flags=re.IGNORECASE)
_ASSIGN_RE = re.compile(r"(?P<key>[A-Za-z_]\w*(?:\([^\)]*\))?)\s*=")
_INT_RE = re.compile(r"[+-]?\d+")
_REPEAT_RE = re.compile(r"(?P<count>\d+)\*(?P<value>.+)")

_TRUE = {"T", ".T.", ".TRUE.", "TRUE"}
_FALSE = {"F", ".F.", ".FALSE.", "FALSE"}


def _strip_comment(line: str) -> str:
    quote: str | None = None
    for i, ch in enumerate(line):
        if ch in "'\"":
            if quote is None:
                quote = ch
            elif quote == ch:
                quote = None
        elif ch == "!" and quote is None:
            return line[:i]
    return line


def _split_values(chunk: str) -> List[str]:
    tokens: List[str] = []
    buf: List[str] = []
    quote: str | None = None
    for ch in chunk.strip():
        if ch in "'\"":
            if quote is None:
                quote = ch
            elif quote == ch:
                quote = None
            buf.append(ch)
        elif quote is None and (ch == "," or ch.isspace()):
            if buf:
                tokens.append("".join(buf))
                buf = []
        else:
            buf.append(ch)
    if quote is not None:
        raise ValueError(f"Unterminated string in namelist value: {chunk!r}")
    if buf:
        tokens.append("".join(buf))
    return tokens


def parse_scalar(tok: str) -> Scalar:
    tok = tok.strip()
    if len(tok) >= 2 and tok[0] == tok[-1] and tok[0] in "'\"":
        return tok[1:-1]
    up = tok.upper()
    if up in _TRUE:
        return True
    if up in _FALSE:
        return False
    if _INT_RE.fullmatch(tok):
        return int(tok)
    try:
        return float(up.replace("D", "E"))
    except ValueError:
        return tok


def _expand(tokens: List[str]) -> List[Scalar]:
    out: List[Scalar] = []
    for tok in tokens:
        m = _REPEAT_RE.fullmatch(tok)
        if m and not tok.startswith(("'", '"')):
            out.extend([parse_scalar(m.group("value"))] * int(m.group("count")))
        else:
            out.append(parse_scalar(tok))
    return out


def _parse_key(key: str) -> Tuple[str, Tuple[int, ...] | None]:
    key = key.strip()
    if "(" not in key:
        return key.upper(), None
    base, rest = key.split("(", 1)
    idx = tuple(int(x) for x in rest.rstrip(")").split(",") if x.strip())
    return base.strip().upper(), idx


@dataclass(frozen=True)
class Namelist:
    groups: Dict[str, Dict[str, Value]]
    indexed: Dict[str, Dict[str, Dict[Tuple[int, ...], Scalar]]]
    source_path: Path | None = None
    source_text: str | None = None

    def group(self, name: str) -> Dict[str, Value]:
        return self.groups.get(name.lower(), {})

    def get(self, group: str, key: str, default=None):
        return self.group(group).get(key.upper(), default)

    def has_group(self, name: str) -> bool:
        return name.lower() in self.groups


def _parse_group_body(body: str) -> Tuple[Dict[str, Value], Dict[str, Dict[Tuple[int, ...], Scalar]]]:
    scalars: Dict[str, Value] = {}
    indexed: Dict[str, Dict[Tuple[int, ...], Scalar]] = {}
    matches = list(_ASSIGN_RE.finditer(body))
    if body.strip() and (not matches or body[: matches[0].start()].strip()):
        raise ValueError(f"Unparseable namelist content: {body.strip()[:60]!r}")
    for i, m in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(body)
        values = _expand(_split_values(body[m.end() : end]))
        if not values:
            continue
        base, idx = _parse_key(m.group("key"))
        if idx is None:
            scalars[base] = values[0] if len(values) == 1 else values
        else:
            if len(values) != 1:
                raise ValueError(f"Indexed assignment {m.group('key')} has multiple values")
            indexed.setdefault(base, {})[idx] = values[0]
    return scalars, indexed


def parse_namelist_text(text: str, *, source_path: Path | None = None) -> Namelist:
    bodies: Dict[str, List[str]] = {}
    current: str | None = None
    for raw in text.splitlines():
        line = _strip_comment(raw)
        if current is None:
            m = _GROUP_START_RE.match(line)
            if not m:
                continue
            current = m.group("name").lower()
            if current in bodies:
                raise ValueError(f"Namelist group &{current} appears twice")
            bodies[current] = []
            rest = m.group("rest").strip()
            if rest.endswith("/"):
                bodies[current].append(rest[:-1])
                current = None
            elif rest:
                bodies[current].append(rest)
            continue
        if _GROUP_START_RE.match(line) and not _GROUP_END_RE.match(line):
            raise ValueError(f"Nested namelist group found while in &{current}")
        if _GROUP_END_RE.match(line):
            current = None
            continue
        stripped = line.rstrip()
        if stripped.endswith("/"):
            bodies[current].append(stripped[:-1])
            current = None
        else:
            bodies[current].append(line)
    if current is not None:
        raise ValueError(f"Namelist &{current} not terminated by '/'")

    groups: Dict[str, Dict[str, Value]] = {}
    indexed: Dict[str, Dict[str, Dict[Tuple[int, ...], Scalar]]] = {}
    for name, lines in bodies.items():
        groups[name], indexed[name] = _parse_group_body("\n".join(lines))
    return Namelist(groups=groups, indexed=indexed, source_path=source_path, source_text=text)


def read_transport_input(path: str | Path) -> Namelist:
    """Parse a transport ``input.namelist`` file into groups."""
    source_path = Path(path).resolve()
    return parse_namelist_text(source_path.read_text(), source_path=source_path)

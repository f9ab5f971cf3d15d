"""
Wire codec for the key-value store.

Requests travel as a single line: the raw command string, base64 encoded,
followed by a newline.

    store:<escaped-key>:<escaped-value>
    get:<escaped-key>
    done

The field delimiter is ':'. A literal ':' inside a key or value is written
as '\\:'. The escape character itself is never escaped, so a key that ends
with a backslash cannot be represented (the delimiter after it reads as an
escaped colon). Such requests are rejected as unknown commands.
"""

import base64
import binascii
from dataclasses import dataclass
from typing import Optional, Union


DELIMITER = ":"
ESCAPE = "\\"
ESCAPED_DELIMITER = ESCAPE + DELIMITER
LINE_TERMINATOR = b"\n"

STORE_PREFIX = "store" + DELIMITER
GET_PREFIX = "get" + DELIMITER
SHUTDOWN_COMMAND = "done"

# Arbitrary bytes survive the str round trip as lone surrogates.
TEXT_ENCODING = "utf-8"
TEXT_ERRORS = "surrogateescape"


class ProtocolError(Exception):
    """Base class for requests that cannot be decoded."""


class MalformedTransport(ProtocolError):
    """The line is not valid base64."""


class UnknownCommand(ProtocolError):
    """The raw command string matches no known command."""


@dataclass(frozen=True)
class Store:
    key: str
    value: str


@dataclass(frozen=True)
class Get:
    key: str


@dataclass(frozen=True)
class Shutdown:
    pass


Command = Union[Store, Get, Shutdown]


def encode_transport(text: Union[str, bytes]) -> bytes:
    """Base64 encode a raw string (or bytes) without line wrapping."""
    if isinstance(text, str):
        text = text.encode(TEXT_ENCODING, TEXT_ERRORS)
    return base64.b64encode(text)


def decode_transport(data: bytes) -> str:
    """
    Reverse encode_transport.

    Surrounding whitespace, including the line terminator, is ignored.

    Raises:
        MalformedTransport: if the payload is not valid base64
    """
    try:
        raw = base64.b64decode(data.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedTransport(f"Invalid base64 payload: {e}") from e
    return raw.decode(TEXT_ENCODING, TEXT_ERRORS)


def escape(raw: str) -> str:
    return raw.replace(DELIMITER, ESCAPED_DELIMITER)


def unescape(escaped: str) -> str:
    # Every ':' produced by escape() carries exactly one backslash, and
    # matches of '\:' never overlap, so this is the inverse of escape().
    return escaped.replace(ESCAPED_DELIMITER, DELIMITER)


def find_delimiter(text: str, start: int = 0) -> int:
    """
    Find the first unescaped delimiter at or after `start`.

    Scans with two states: normal, and after-escape (the previous
    character was the escape character). A delimiter seen in the
    after-escape state is payload. An escape character seen in the
    after-escape state keeps the scanner there, since escapes do not nest.

    Returns:
        Index of the delimiter, or -1 if there is none
    """
    after_escape = False
    for index in range(start, len(text)):
        char = text[index]
        if after_escape:
            after_escape = char == ESCAPE
        elif char == ESCAPE:
            after_escape = True
        elif char == DELIMITER:
            return index
    return -1


def parse_command(raw: str) -> Command:
    """
    Turn a raw command string into a Command.

    Keys and values are unescaped before they are returned.

    Raises:
        UnknownCommand: if no command matches, or a store command has no
            delimiter between key and value
    """
    if raw.startswith(STORE_PREFIX):
        body = raw[len(STORE_PREFIX):]
        boundary = find_delimiter(body)
        if boundary < 0:
            raise UnknownCommand("store command has no key/value delimiter")
        return Store(
            key=unescape(body[:boundary]),
            value=unescape(body[boundary + 1:])
        )

    if raw.startswith(GET_PREFIX):
        return Get(key=unescape(raw[len(GET_PREFIX):]))

    if raw == SHUTDOWN_COMMAND:
        return Shutdown()

    raise UnknownCommand(f"Unknown command: {raw[:32]!r}")


def format_command(command: Command) -> str:
    """Build the raw command string for a Command (client side)."""
    if isinstance(command, Store):
        return STORE_PREFIX + escape(command.key) + DELIMITER + escape(command.value)
    if isinstance(command, Get):
        return GET_PREFIX + escape(command.key)
    if isinstance(command, Shutdown):
        return SHUTDOWN_COMMAND
    raise TypeError(f"Not a command: {command!r}")


def render_response(value: Optional[str]) -> str:
    """A missing key is answered with an empty string, not an error."""
    return value if value is not None else ""


def encode_request(command: Command) -> bytes:
    """Build the complete wire frame for a request."""
    return encode_transport(format_command(command)) + LINE_TERMINATOR


def decode_request(line: bytes) -> Command:
    return parse_command(decode_transport(line))


def encode_reply(text: str) -> bytes:
    return encode_transport(text) + LINE_TERMINATOR


def decode_reply(line: bytes) -> str:
    return decode_transport(line)

"""Very low-level nginx config parser and dumper based on pyparsing.

Configuration is represented as a list of entries. A directive is a list
of strings (``["listen", "443", "ssl"]``), a comment is ``["#", text]``
and a block is a pair ``[header, body]`` where header is a list of strings
and body is again a list of entries.
"""
import logging
from typing import Any

from pyparsing import Combine
from pyparsing import Forward
from pyparsing import Group
from pyparsing import Literal
from pyparsing import Optional
from pyparsing import ParseException
from pyparsing import ParseResults
from pyparsing import QuotedString
from pyparsing import Regex
from pyparsing import restOfLine
from pyparsing import stringEnd
from pyparsing import White
from pyparsing import ZeroOrMore

logger = logging.getLogger(__name__)

INDENT = "    "


class RawNginxParser:
    # pylint: disable=pointless-statement
    """A class that parses nginx configuration with pyparsing."""

    # constants
    space = Optional(White()).leaveWhitespace()
    required_space = White().leaveWhitespace()

    left_bracket = Literal("{").suppress()
    right_bracket = space + Literal("}").suppress()
    semicolon = Literal(";").suppress()
    dquoted = QuotedString('"', multiline=True, unquoteResults=False, escChar='\\')
    squoted = QuotedString("'", multiline=True, unquoteResults=False, escChar='\\')
    quoted = dquoted | squoted
    head_tokenchars = Regex(r"(\$\{)|[^{};\s'\"]") # if (last_space)
    tail_tokenchars = Regex(r"(\$\{)|[^{;\s]") # else
    tokenchars = Combine(head_tokenchars + ZeroOrMore(tail_tokenchars))
    paren_quote_extend = Combine(quoted + Literal(')') + ZeroOrMore(tail_tokenchars))

    token = paren_quote_extend | tokenchars | quoted

    whitespace_token_group = space + token + ZeroOrMore(required_space + token) + space
    assignment = whitespace_token_group + semicolon

    comment = space + Literal('#') + restOfLine

    block = Forward()

    # order matters! comments first, then blocks, then directives
    contents = Group(comment) | Group(block) | Group(assignment)

    block_begin = Group(whitespace_token_group)
    block_innards = Group(ZeroOrMore(contents) + space).leaveWhitespace()
    block << block_begin + left_bracket + block_innards + right_bracket

    script = ZeroOrMore(contents) + space + stringEnd
    script.parseWithTabs().leaveWhitespace()

    def __init__(self, source: str) -> None:
        self.source = source

    def parse(self) -> ParseResults:
        """Returns the parsed tree."""
        return self.script.parseString(self.source)

    def as_list(self) -> list[Any]:
        """Returns the parsed tree as a list."""
        return self.parse().asList()


def spacey(x: Any) -> bool:
    """Is x a whitespace-only (or empty) string?"""
    return (isinstance(x, str) and x.isspace()) or x == ''


def _strip_spaces(entries: list[Any]) -> list[Any]:
    """Drop the whitespace tokens the parser keeps around."""
    stripped = []
    for entry in entries:
        if isinstance(entry, list):
            stripped.append(_strip_spaces(entry))
        elif not spacey(entry):
            stripped.append(entry)
    return stripped


def is_block(entry: list[Any]) -> bool:  # pylint: disable=missing-function-docstring
    return bool(entry) and isinstance(entry[0], list)


def is_comment(entry: list[Any]) -> bool:  # pylint: disable=missing-function-docstring
    return bool(entry) and entry[0] == '#'


class NginxDumper:
    """Dumps a tree of entries as consistently indented nginx configuration.

    The output only depends on the tree, never on how it was built, so
    equal trees always dump to identical text.
    """
    def __init__(self, blocks: list[Any]) -> None:
        self.blocks = blocks

    def lines(self, blocks: list[Any], depth: int = 0) -> list[str]:
        """Lines of the dumped blocks, indented for depth."""
        pad = INDENT * depth
        out: list[str] = []
        for entry in blocks:
            if is_block(entry):
                header, body = entry
                if depth == 0 and out:
                    out.append("")
                out.append(pad + " ".join(header) + " {")
                out.extend(self.lines(body, depth + 1))
                out.append(pad + "}")
            elif is_comment(entry):
                out.append(pad + "#" + "".join(entry[1:]))
            else:
                out.append(pad + " ".join(entry) + ";")
        return out

    def __str__(self) -> str:
        """Return the dumped configuration as a string."""
        return "\n".join(self.lines(self.blocks)) + "\n"


# Shortcut functions to respect Python's serialization interface
# (like pyyaml, picker or json)

def loads(source: str) -> list[Any]:
    """Parses from a string.

    :param str source: The string to parse
    :returns: The parsed tree, without whitespace tokens
    :rtype: list

    :raises pyparsing.ParseException: if source is not valid nginx syntax

    """
    return _strip_spaces(RawNginxParser(source).as_list())


def dumps(blocks: list[Any]) -> str:
    """Dump to a Unicode string.

    :param list blocks: The tree of entries
    :rtype: str

    """
    return str(NginxDumper(blocks))


def roundtrips(blocks: list[Any]) -> bool:
    """Does dumping blocks and parsing the result give blocks back?

    A tree containing tokens with whitespace, quotes or braces dumps to
    text that either does not parse or parses to a different structure.
    """
    try:
        return loads(dumps(blocks)) == blocks
    except ParseException as error:
        logger.debug("Dumped configuration does not parse: %s", error)
        return False

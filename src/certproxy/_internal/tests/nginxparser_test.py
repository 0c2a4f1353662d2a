"""Test for certproxy._internal.nginxparser."""
import sys
import unittest

import pytest
from pyparsing import ParseException

from certproxy._internal.nginxparser import dumps
from certproxy._internal.nginxparser import loads
from certproxy._internal.nginxparser import RawNginxParser
from certproxy._internal.nginxparser import roundtrips

FIRST = """\
# Managed elsewhere

server {
    listen 80;
    server_name example.com;
    location / {
        proxy_pass http://127.0.0.1:8080;
        add_header Strict-Transport-Security "max-age=31536000" always;
    }
}

server {
    # certificate
    listen [::]:443 ssl;
}
"""


class TestRawNginxParser(unittest.TestCase):
    """Test the raw low-level Nginx config parser."""

    def test_assignments(self):
        parsed = RawNginxParser.assignment.parseString('root /test;').asList()
        assert parsed == ['root', ' ', '/test']
        parsed = RawNginxParser.assignment.parseString('root /test;foo bar;').asList()
        assert parsed == ['root', ' ', '/test'], ['foo', ' ', 'bar']

    def test_blocks(self):
        parsed = RawNginxParser.block.parseString('foo {}').asList()
        assert parsed == [['foo', ' '], []]
        parsed = RawNginxParser.block.parseString('location /foo{}').asList()
        assert parsed == [['location', ' ', '/foo'], []]
        parsed = RawNginxParser.block.parseString('foo { bar foo ; }').asList()
        assert parsed == [['foo', ' '], [[' ', 'bar', ' ', 'foo', ' '], ' ']]

    def test_nested_blocks(self):
        parsed = RawNginxParser.block.parseString('foo { bar {} }').asList()
        block, content = parsed
        assert content[0] == [[' ', 'bar', ' '], []]
        assert block[0] == 'foo'


class LoadsDumpsTest(unittest.TestCase):
    """Tests for the whitespace-free loads/dumps pair."""

    def test_loads(self):
        parsed = loads(FIRST)
        assert parsed[0] == ['#', ' Managed elsewhere']
        header, body = parsed[1]
        assert header == ['server']
        assert body[0] == ['listen', '80']
        assert body[2] == [['location', '/'], [
            ['proxy_pass', 'http://127.0.0.1:8080'],
            ['add_header', 'Strict-Transport-Security', '"max-age=31536000"', 'always']]]
        assert parsed[2][1][0] == ['#', ' certificate']

    def test_dumps_is_canonical(self):
        assert dumps(loads(FIRST)) == FIRST
        squashed = "# Managed elsewhere\nserver{listen 80;server_name example.com;" \
            "location / {proxy_pass http://127.0.0.1:8080;add_header " \
            "Strict-Transport-Security \"max-age=31536000\" always;}}\n" \
            "server {\n  # certificate\n  listen [::]:443 ssl;}"
        assert dumps(loads(squashed)) == FIRST

    def test_invalid(self):
        with pytest.raises(ParseException):
            loads("server { listen 80;")

    def test_roundtrips(self):
        assert roundtrips(loads(FIRST))
        assert not roundtrips([['server_name', 'example.com; evil']])
        assert not roundtrips([[['server'], [['listen', '80 }']]]])
        assert not roundtrips([['root', 'has space']])


if __name__ == "__main__":
    sys.exit(pytest.main(sys.argv[1:] + [__file__]))  # pragma: no cover

"""Unit tests for the CLI: argument handling and JSONL event output."""

import io
import json

import pytest
from unittest.mock import MagicMock, patch

from webscan.cdp.exceptions import CDPError, RequestError
from webscan.cli.collect_cmd import format_event, jsonl_printer, serialize_payload
from webscan.cli.main import build_configuration, create_main_parser, create_parent_parser, main, parse_header_args
from webscan.dom import AsyncHTMLElement
from webscan.types import Request, Response


@pytest.fixture(autouse=True)
def no_config_file(monkeypatch):
    monkeypatch.setattr("webscan.config.Configuration.load_from_file", lambda self, path: None)
    monkeypatch.setattr("webscan.config.Configuration.load_from_env", lambda self: None)


def parse(argv):
    return create_main_parser(create_parent_parser()).parse_args(argv)


@pytest.mark.unit
class TestOutput:

    def test_element_payload_is_reduced(self):
        node = {"nodeId": 5, "nodeType": 1, "nodeName": "IMG", "attributes": ["src", "a.png"]}
        payload = {"element": AsyncHTMLElement(node, MagicMock()), "resource": "https://a.test/"}

        record = json.loads(format_event("element::img", payload))

        assert record == {
            "event": "element::img",
            "element": {"nodeName": "IMG", "attributes": {"src": "a.png"}},
            "resource": "https://a.test/",
        }

    def test_fetch_end_payload(self):
        payload = {
            "element": None,
            "request": Request("https://a.test/x.js", {"Accept": "*/*"}),
            "resource": "https://a.test/x.js",
            "response": Response("https://a.test/x.js", 200, {"content-type": "text/javascript"},
                                 media_type="text/javascript", charset="utf-8"),
        }

        record = json.loads(format_event("fetch::end", payload))

        assert record["response"]["statusCode"] == 200
        assert record["response"]["mediaType"] == "text/javascript"
        assert record["request"] == {"url": "https://a.test/x.js", "headers": {"Accept": "*/*"}}

    def test_errors_are_named(self):
        assert serialize_payload(RequestError("net::ERR_FAILED")) == {
            "name": "RequestError",
            "message": "net::ERR_FAILED",
        }

    def test_printer_writes_one_line_per_event(self):
        stream = io.StringIO()
        printer = jsonl_printer(stream)

        printer("scan::start", {"resource": "https://a.test/"})
        printer("scan::end", {"resource": "https://a.test/"})

        lines = stream.getvalue().splitlines()
        assert [json.loads(line)["event"] for line in lines] == ["scan::start", "scan::end"]


@pytest.mark.unit
class TestArguments:

    def test_cli_flags_override_defaults(self):
        args = parse([
            "collect", "https://a.test/",
            "--chrome-port", "9333",
            "--wait-for", "0",
            "--header", "User-Agent: webscan",
            "--override-invalid-cert",
        ])

        config = build_configuration(args)

        assert config.chrome_port == 9333
        assert config.wait_for == 0
        assert config.headers == {"User-Agent": "webscan"}
        assert config.override_invalid_cert is True
        assert config.use_tab_url is False

    def test_unset_flags_keep_defaults(self):
        config = build_configuration(parse(["collect", "https://a.test/"]))

        assert config.headless is True
        assert config.timeout == 60.0

    def test_invalid_header(self):
        with pytest.raises(Exception, match="NAME:VALUE"):
            parse_header_args(["no-colon"])

    def test_evaluate_arguments(self):
        args = parse(["evaluate", "https://a.test/", "document.title", "--headful"])

        assert args.expression == "document.title"
        assert args.headless is False


@pytest.mark.unit
class TestMain:

    def test_exit_codes(self):
        with patch("webscan.cli.main.setup_logging"), \
                patch("webscan.cli.collect_cmd.collect_handler_async") as handler:
            handler.return_value = None

            with patch("webscan.cli.collect_cmd.asyncio.run", return_value=0):
                assert main(["collect", "https://a.test/"]) == 0

            with patch("webscan.cli.collect_cmd.asyncio.run", side_effect=KeyboardInterrupt):
                assert main(["collect", "https://a.test/"]) == 130

            with patch("webscan.cli.collect_cmd.asyncio.run", side_effect=CDPError("boom")):
                assert main(["collect", "https://a.test/"]) == 1

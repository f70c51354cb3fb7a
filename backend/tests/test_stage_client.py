import asyncio
import json

import httpx
import pytest

from site_screener.models import (
    CrawledContent,
    ErrorKind,
    ErrorStage,
    ProxyConfig,
    ProxySettings,
    ResultLabel,
)
from site_screener.pipeline.stage_client import StageClient, chat_base_url
from tests.utils import make_config

HOME = """
<html><head><title>Acme</title><meta name="description" content="Pumps"></head>
<body><p>Industrial pumps</p><a href="/contact">Contact</a><footer>Acme Ltd</footer></body></html>
"""
CONTACT = "<html><head><title>Contact</title></head><body><p>sales@acme.com</p></body></html>"


def _chat_reply(content: str | None) -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "test-model",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
    }


def _client(handler) -> StageClient:
    return StageClient(transport=httpx.MockTransport(handler), crawl_timeout=5, analyze_timeout=5)


def test_chat_base_url():
    assert chat_base_url("https://ai.example.com/v1/chat/completions") == "https://ai.example.com/v1"
    assert chat_base_url(" https://ai.example.com/v1/ ") == "https://ai.example.com/v1"


@pytest.mark.asyncio
async def test_crawl_home_and_related_pages():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/contact":
            return httpx.Response(200, text=CONTACT)
        return httpx.Response(200, text=HOME)

    response = await _client(handler).crawl("https://acme.com", make_config())

    assert response.success
    content = response.content
    assert content.title == "Acme"
    assert content.description == "Pumps"
    assert content.footer_content == "Acme Ltd"
    assert content.crawled_count == 2
    assert [p.type for p in content.pages] == ["home", "contact"]
    assert "[contact] sales@acme.com" in content.content


@pytest.mark.asyncio
async def test_crawl_http_error_is_not_retryable():
    response = await _client(lambda request: httpx.Response(404)).crawl(
        "https://acme.com", make_config()
    )
    assert not response.success
    assert response.status_code == 404
    assert response.error.type == ErrorKind.CRAWL
    assert response.error.stage == ErrorStage.CRAWLING
    assert response.error.retryable is False


@pytest.mark.asyncio
async def test_crawl_server_error_is_retryable():
    response = await _client(lambda request: httpx.Response(503)).crawl(
        "https://acme.com", make_config()
    )
    assert response.error.status_code == 503
    assert response.error.retryable is True


@pytest.mark.asyncio
async def test_crawl_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    response = await _client(handler).crawl("https://acme.com", make_config())
    assert not response.success
    assert response.error.type == ErrorKind.NETWORK
    assert response.error.retryable is True


@pytest.mark.asyncio
async def test_crawl_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    response = await _client(handler).crawl("https://acme.com", make_config())
    assert response.error.type == ErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_slow_related_page_is_dropped_without_failing_crawl():
    home = (
        "<html><head><title>Acme</title></head><body><p>Industrial pumps</p>"
        '<a href="/about">About us</a><a href="/contact">Contact</a></body></html>'
    )

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path in ("/about", "/contact"):
            await asyncio.sleep(0.6)
            return httpx.Response(200, text=CONTACT)
        return httpx.Response(200, text=home)

    client = StageClient(transport=httpx.MockTransport(handler), crawl_timeout=1.0)
    response = await client.crawl("https://acme.com", make_config())

    assert response.success
    assert [p.type for p in response.content.pages] == ["home", "about"]
    assert response.content.crawled_count == 2


@pytest.mark.asyncio
async def test_analyze_parses_answer():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_chat_reply('{"result": "Y", "reason": "pump maker"}'))

    content = CrawledContent(title="Acme", content="Industrial pumps")
    response = await _client(handler).analyze(content, make_config())

    assert response.success
    assert response.result == ResultLabel.Y
    assert response.reason == "pump maker"
    assert seen["url"] == "https://ai.example.com/v1/chat/completions"
    assert seen["body"]["model"] == "test-model"
    assert seen["body"]["temperature"] == 0.3
    assert "Industrial pumps" in seen["body"]["messages"][1]["content"]


@pytest.mark.asyncio
async def test_analyze_auth_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "bad key"}})

    response = await _client(handler).analyze(CrawledContent(content="x"), make_config())
    assert not response.success
    assert response.error.type == ErrorKind.AI
    assert response.error.status_code == 401
    assert response.error.retryable is False


@pytest.mark.asyncio
async def test_analyze_empty_answer():
    response = await _client(lambda request: httpx.Response(200, json=_chat_reply(""))).analyze(
        CrawledContent(content="x"), make_config()
    )
    assert not response.success
    assert response.error.type == ErrorKind.AI
    assert response.error.message == "Empty response from AI"


@pytest.mark.asyncio
async def test_analyze_without_api_key_makes_no_call():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=_chat_reply("{}"))

    response = await _client(handler).analyze(CrawledContent(content="x"), make_config(api_key=""))
    assert not response.success
    assert response.error.type == ErrorKind.CONFIG
    assert response.error.retryable is False
    assert calls == []


@pytest.mark.asyncio
async def test_analyze_without_content():
    response = await _client(lambda request: httpx.Response(500)).analyze(
        CrawledContent(), make_config()
    )
    assert not response.success
    assert response.error.message == "No content to analyze"


@pytest.mark.asyncio
async def test_extract_emails_and_company_info():
    def handler(request: httpx.Request) -> httpx.Response:
        prompt = json.loads(request.content)["messages"][1]["content"]
        if "Extract every valid email" in prompt:
            answer = '{"emails": [{"email": "sales@acme.com", "type": "sales"}, {"email": "logo@acme.png"}]}'
        else:
            answer = '{"primaryName": "Acme", "fullName": "Acme Ltd"}'
        return httpx.Response(200, json=_chat_reply(answer))

    client = _client(handler)
    content = CrawledContent(title="Acme", content="sales@acme.com")
    emails = await client.extract_emails(content, make_config())
    company = await client.extract_company_info(content, make_config())

    assert [e.email for e in emails.emails] == ["sales@acme.com"]
    assert company.company_info.primary_name == "Acme"
    assert company.company_info.full_name == "Acme Ltd"


@pytest.mark.asyncio
async def test_extract_rate_limited_is_retryable():
    response = await _client(lambda request: httpx.Response(429)).extract_emails(
        CrawledContent(content="x"), make_config()
    )
    assert not response.success
    assert response.error.stage == ErrorStage.INFO_EXTRACTION
    assert response.error.status_code == 429
    assert response.error.retryable is True


def test_pick_proxy_strategies():
    proxies = [ProxyConfig(host=f"10.0.0.{i}", port=8080) for i in range(1, 4)]
    client = StageClient()

    assert client.pick_proxy(make_config()) is None

    rotating = make_config(proxy_settings=ProxySettings(enabled=True, proxies=proxies))
    picked = [client.pick_proxy(rotating).host for _ in range(4)]
    assert picked == ["10.0.0.1", "10.0.0.2", "10.0.0.3", "10.0.0.1"]

    limited = make_config(
        proxy_settings=ProxySettings(
            enabled=True, proxies=proxies, strategy="concurrent", max_concurrent_proxies=2
        )
    )
    assert {StageClient().pick_proxy(limited).host for _ in range(4)} <= {"10.0.0.1", "10.0.0.2"}

    randomised = make_config(proxy_settings=ProxySettings(enabled=True, proxies=proxies, strategy="random"))
    assert client.pick_proxy(randomised) in proxies

"""
Test website fetching and responsiveness scoring (httpx MockTransport, no network).
"""
import httpx
import pytest

from responsiai.core.errors import UpstreamError, ValidationError
from responsiai.features.analysis.fetcher import analyze_url, normalize_url, score_html


def test_normalize_url_adds_scheme():
    assert normalize_url(" example.com ") == "https://example.com"
    assert normalize_url("http://example.com/a") == "http://example.com/a"


@pytest.mark.parametrize("bad", ["", "   ", "https://"])
def test_normalize_url_rejects_empty(bad):
    with pytest.raises(ValidationError):
        normalize_url(bad)


def test_score_rewards_responsive_markers():
    responsive = score_html(
        "https://a.test",
        200,
        '<title>A</title><meta name="viewport" content="width=device-width, initial-scale=1">'
        "<style>@media (max-width: 768px){} @media (min-width: 1024px){}</style>"
        '<img src="x.png" srcset="x2.png 2x">',
    )
    fixed = score_html(
        "https://b.test",
        200,
        '<title>B</title><div style="width: 1280px"></div><img src="x.png">',
    )

    assert responsive.has_viewport_meta and responsive.media_query_count == 2
    assert responsive.responsive_image_count == 1
    assert fixed.fixed_width_count == 1
    assert responsive.score > fixed.score
    assert 0 <= fixed.score <= responsive.score <= 100


def test_title_falls_back_to_hostname():
    assert score_html("https://c.test/page", 200, "<html></html>").title == "c.test"


@pytest.mark.asyncio
async def test_analyze_url_fetches_with_desktop_user_agent():
    seen = {}

    def handler(request):
        seen["ua"] = request.headers["user-agent"]
        return httpx.Response(200, text='<title>Home</title><meta name="viewport" content="width=device-width">')

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        report = await analyze_url("example.com", client=client)

    assert "Windows NT" in seen["ua"]
    assert report.title == "Home"
    assert report.url.rstrip("/") == "https://example.com"


@pytest.mark.asyncio
async def test_analyze_url_http_error_is_upstream_error():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503))) as client:
        with pytest.raises(UpstreamError):
            await analyze_url("example.com", client=client)


@pytest.mark.asyncio
async def test_analyze_url_connection_error_is_upstream_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(UpstreamError):
            await analyze_url("example.com", client=client)

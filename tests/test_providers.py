"""Provider clients against mocked HTTP transports."""

import asyncio
import json

import httpx
import pytest

from aeroleads_client import AeroLeadsClient
from apollo_client import ApolloClient
from config import reload_settings
from hunter_client import HunterClient
from models import Company, Contact, ContactSearchTier, DiscoveryTarget
from perplexity_client import PerplexityClient, extract_json
from providers import ProviderAuthError, ProviderNotConfiguredError, ProviderTimeoutError, company_domain

ACME = Company(id=10, user_id=1, name="Acme Robotics", website="https://www.acmerobotics.com/about")
SARAH = Contact(id=20, user_id=1, company_id=10, name="Sarah Chen")


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def chat_response(content: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


class TestCompanyDomain:

    def test_strips_scheme_www_and_path(self):
        assert company_domain(ACME) == "acmerobotics.com"

    def test_missing_website(self):
        assert company_domain(Company(user_id=1, name="Acme")) is None


class TestHunterClient:

    async def test_found_email_uses_domain(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.url.params)
            return httpx.Response(200, json={
                "data": {"email": "sarah.chen@acmerobotics.com", "score": 0.91, "position": "CEO"}
            })

        client = HunterClient(api_key="hunter-key", http_client=mock_client(handler))
        result = await client.search(SARAH, ACME)

        assert result.found
        assert result.email == "sarah.chen@acmerobotics.com"
        assert result.confidence == 91
        assert result.role == "CEO"
        assert seen["domain"] == "acmerobotics.com"
        assert seen["first_name"] == "Sarah"
        assert seen["last_name"] == "Chen"

    async def test_no_email_is_not_found(self):
        client = HunterClient(
            api_key="hunter-key",
            http_client=mock_client(lambda request: httpx.Response(200, json={"data": {"email": None}})),
        )
        result = await client.search(SARAH, ACME)
        assert not result.found

    async def test_single_word_name_skips_request(self):
        def handler(request):
            raise AssertionError("no request expected")

        client = HunterClient(api_key="hunter-key", http_client=mock_client(handler))
        result = await client.search(Contact(id=21, user_id=1, name="Cher"), ACME)
        assert not result.found
        assert result.error == "incomplete name"

    async def test_invalid_key_raises_auth_error(self):
        client = HunterClient(
            api_key="bad-key",
            http_client=mock_client(lambda request: httpx.Response(401, json={"errors": []})),
        )
        with pytest.raises(ProviderAuthError):
            await client.search(SARAH, ACME)

    async def test_slow_provider_is_cut_off_at_call_timeout(self, monkeypatch):
        monkeypatch.setenv("PROVIDER_CALL_TIMEOUT", "1")
        reload_settings()

        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200, json={"data": {"email": "sarah.chen@acmerobotics.com"}})

        client = HunterClient(api_key="hunter-key", http_client=mock_client(handler))
        with pytest.raises(ProviderTimeoutError):
            await client.search(SARAH, ACME)


class TestApolloClient:

    async def test_people_match(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["api_key"] = request.headers["X-Api-Key"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"person": {
                "email": "sarah.chen@acmerobotics.com",
                "title": "Chief Executive Officer",
                "linkedin_url": "https://linkedin.com/in/sarahchen",
            }})

        client = ApolloClient(api_key="apollo-key", http_client=mock_client(handler))
        result = await client.search(SARAH, ACME)

        assert result.found
        assert result.confidence == 75
        assert result.linkedin_url == "https://linkedin.com/in/sarahchen"
        assert seen["api_key"] == "apollo-key"
        assert seen["body"] == {"name": "Sarah Chen", "organization_name": "Acme Robotics", "domain": "acmerobotics.com"}

    async def test_unconfigured_client_refuses_to_search(self):
        client = ApolloClient(api_key="")
        assert not client.is_configured
        with pytest.raises(ProviderNotConfiguredError):
            await client.search(SARAH, ACME)


class TestAeroLeadsClient:

    async def test_nested_response(self):
        client = AeroLeadsClient(
            api_key="aero-key",
            http_client=mock_client(lambda request: httpx.Response(200, json={
                "success": True, "data": {"email": "sarah.chen@acmerobotics.com", "score": 88},
            })),
        )
        result = await client.search(SARAH, ACME)
        assert result.email == "sarah.chen@acmerobotics.com"
        assert result.confidence == 88

    async def test_flat_response(self):
        client = AeroLeadsClient(
            api_key="aero-key",
            http_client=mock_client(lambda request: httpx.Response(200, json={"email": "sarah@acmerobotics.com"})),
        )
        result = await client.search(SARAH, ACME)
        assert result.email == "sarah@acmerobotics.com"
        assert result.confidence == 75

    async def test_empty_response(self):
        client = AeroLeadsClient(
            api_key="aero-key",
            http_client=mock_client(lambda request: httpx.Response(200, json={"success": False})),
        )
        result = await client.search(SARAH, ACME)
        assert not result.found


class TestPerplexityClient:

    async def test_email_search_reads_json(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            return chat_response('Here you go: {"professional_email": "sarah.chen@acmerobotics.com", "linkedin_url": ""}')

        client = PerplexityClient(api_key="pplx-key", http_client=mock_client(handler))
        result = await client.search(SARAH, ACME)

        assert result.found
        assert result.email == "sarah.chen@acmerobotics.com"
        assert result.confidence == 60
        assert seen["auth"] == "Bearer pplx-key"

    async def test_email_search_empty_json_is_not_found(self):
        client = PerplexityClient(
            api_key="pplx-key",
            http_client=mock_client(lambda request: chat_response('{"professional_email": ""}')),
        )
        result = await client.search(SARAH, ACME)
        assert not result.found

    async def test_find_decision_makers(self):
        content = '{"contacts": [{"name": "Sarah  Chen", "role": "CEO"}, {"name": "", "role": "CTO"}, {"name": "Raj Patel", "title": "CTO"}]}'
        client = PerplexityClient(api_key="pplx-key", http_client=mock_client(lambda request: chat_response(content)))

        candidates = await client.find_decision_makers(ACME, DiscoveryTarget(tier=ContactSearchTier.CORE_LEADERSHIP))

        assert [(c.name, c.role) for c in candidates] == [("Sarah Chen", "CEO"), ("Raj Patel", "CTO")]
        assert all(c.discovery_tier == ContactSearchTier.CORE_LEADERSHIP for c in candidates)

    async def test_score_names_clamps_values(self):
        content = '{"scores": {"Sarah Chen": 140, "Raj Patel": 55, "Bogus": "high"}}'
        client = PerplexityClient(api_key="pplx-key", http_client=mock_client(lambda request: chat_response(content)))

        scores = await client.score_names(["Sarah Chen", "Raj Patel", "Bogus"], "Acme Robotics")
        assert scores == {"Sarah Chen": 100, "Raj Patel": 55}

    async def test_search_companies(self):
        content = json.dumps({"companies": [
            {"name": "Acme Robotics", "website": "acmerobotics.com", "industry": "technology", "size": 120},
            {"name": "  ", "website": "nameless.com"},
            {"name": "Bolt Labs", "size": "about 50", "services": ["drones"]},
        ]})
        client = PerplexityClient(api_key="pplx-key", http_client=mock_client(lambda request: chat_response(content)))

        companies = await client.search_companies("robotics startups", user_id=7, limit=5)

        assert [c.name for c in companies] == ["Acme Robotics", "Bolt Labs"]
        assert companies[0].size == 120
        assert companies[1].size is None
        assert companies[1].services == ["drones"]
        assert all(c.user_id == 7 for c in companies)


def test_extract_json_handles_noise():
    assert extract_json('Sure! {"a": 1} Hope that helps') == {"a": 1}
    assert extract_json("no json here") == {}
    assert extract_json("{broken") == {}

"""
Tests for ContentAnalysisService (AI classification with keyword fallback)
"""
import json
import socket
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest

from services.cache_store import CacheStore
from services.content_analysis_service import ContentAnalysisService
from services.provider_chain import ProviderChain


def openai_returning(payload):
    """Mock openai.OpenAI client whose chat completion returns payload as JSON"""
    client = MagicMock()
    response = MagicMock()
    response.choices = [MagicMock(message=MagicMock(content=json.dumps(payload)))]
    client.chat.completions.create.return_value = response
    return client


def gemini_returning(text):
    client = MagicMock()
    client.models.generate_content.return_value = MagicMock(text=text)
    return client


@pytest.fixture
def chain():
    chain = ProviderChain()
    yield chain
    chain.shutdown()


@pytest.fixture
def ai_settings(settings):
    return replace(settings, openai_enabled=True, gemini_enabled=True)


class TestKeywordClassifier:
    """Deterministic fallback classification"""

    def test_urgent_help_request(self):
        """'urgent' is critical and 'need' is a help request"""
        result = ContentAnalysisService.keyword_classify('URGENT: need rescue and water in Queens, NY')
        assert result['urgency'] == 'critical'
        assert result['content_type'] == 'help_request'
        assert result['relevance'] == 'high'
        assert set(result['needs']) == {'rescue', 'water'}
        assert result['location'] == 'Queens, NY'
        assert result['provider'] == 'keyword'

    def test_help_offer(self):
        """Offers are recognized"""
        result = ContentAnalysisService.keyword_classify('Offering shelter for displaced families')
        assert result['content_type'] == 'help_offer'
        assert result['urgency'] == 'low'

    def test_emergency_alert(self):
        """Warnings and evacuations are alerts"""
        result = ContentAnalysisService.keyword_classify('Flood warning: evacuate the waterfront')
        assert result['content_type'] == 'emergency_alert'
        assert result['urgency'] == 'medium'
        assert result['disaster_type'] == 'flood'

    def test_irrelevant_text(self):
        """No disaster keywords means low relevance"""
        result = ContentAnalysisService.keyword_classify('Lovely weather today')
        assert result['relevance'] == 'low'
        assert result['location'] == 'Unknown'


class TestClassify:
    """Classification through the provider chain"""

    def test_no_ai_providers_uses_keyword_classifier(self, chain, settings):
        """Without clients the keyword classifier answers"""
        service = ContentAnalysisService(chain, settings)
        assert service.classify('SOS trapped on roof')['provider'] == 'keyword'

    def test_openai_result_is_normalized(self, chain, ai_settings):
        """OpenAI JSON is mapped onto the fixed vocabularies"""
        client = openai_returning({
            'relevance': 'HIGH', 'urgency': 'critical', 'disasterType': 'Flood',
            'contentType': 'help_request', 'needs': 'rescue', 'location': 'Queens'
        })
        service = ContentAnalysisService(chain, ai_settings, openai_client=client)

        result = service.classify('People trapped in Queens')

        assert result['provider'] == 'openai'
        assert result['relevance'] == 'high'
        assert result['urgency'] == 'critical'
        assert result['disaster_type'] == 'flood'
        assert result['content_type'] == 'help_request'
        assert result['needs'] == ['rescue']
        _, kwargs = client.chat.completions.create.call_args
        assert kwargs['response_format'] == {'type': 'json_object'}

    def test_gemini_used_when_openai_fails(self, chain, ai_settings):
        """Gemini is the fallback provider"""
        openai_client = MagicMock()
        openai_client.chat.completions.create.side_effect = RuntimeError('rate limited')
        gemini_client = gemini_returning(json.dumps({'urgency': 'high', 'content_type': 'information'}))
        service = ContentAnalysisService(chain, ai_settings, openai_client=openai_client, gemini_client=gemini_client)

        result = service.classify('Power out across Brooklyn')

        assert result['provider'] == 'gemini'
        assert result['urgency'] == 'high'

    def test_malformed_ai_output_falls_back(self, chain, ai_settings):
        """Invalid JSON from both providers ends in the keyword classifier"""
        openai_client = MagicMock()
        openai_client.chat.completions.create.return_value.choices = [MagicMock(message=MagicMock(content='not json'))]
        service = ContentAnalysisService(
            chain, ai_settings, openai_client=openai_client, gemini_client=gemini_returning('{"relevance": "high"}')
        )

        assert service.classify('help needed')['provider'] == 'keyword'

    def test_keyword_results_are_not_cached(self, fake_db, clock, settings):
        """Degraded classifications are recomputed on every call"""
        cache = CacheStore(fake_db, clock=clock)
        chain = ProviderChain(cache)
        try:
            ContentAnalysisService(chain, settings).classify('help')
        finally:
            chain.shutdown()
        assert cache.stats()['entries'] == 0


class TestExtractLocation:
    """Location extraction"""

    def test_regex_fallback(self, chain, settings):
        """Without AI the most specific place mention is used"""
        result = ContentAnalysisService(chain, settings).extract_location('Water rising in Lower East Side, NYC')
        assert result['extracted_location'] == 'Lower East Side, NYC'
        assert result['provider'] == 'regex'
        assert result['confidence'] == 'low'

    def test_nothing_found(self, chain, settings):
        """No place mentioned degrades to Unknown Location"""
        result = ContentAnalysisService(chain, settings).extract_location('water everywhere')
        assert result['extracted_location'] == 'Unknown Location'
        assert result['provider'] == 'mock'
        assert 'error' in result

    def test_openai_extraction(self, chain, ai_settings):
        """AI result is used when available"""
        client = openai_returning({'location': 'Hoboken, NJ', 'confidence': 'high'})
        result = ContentAnalysisService(chain, ai_settings, openai_client=client).extract_location('near the PATH station')
        assert result == {**result, 'extracted_location': 'Hoboken, NJ', 'confidence': 'high', 'provider': 'openai'}


class TestVerifyImage:
    """Image verification"""

    def test_degraded_result_is_suspicious(self, chain, settings):
        """Without AI the image is never auto-verified"""
        result = ContentAnalysisService(chain, settings).verify_image('https://example.com/flood.jpg', 'flooded street')
        assert result['authenticity'] == 'suspicious'
        assert result['confidence'] == 'low'
        assert result['provider'] == 'mock'

    def test_openai_verification_with_bytes(self, chain, ai_settings):
        """Raw bytes are sent as a data URI"""
        client = openai_returning({'authenticity': 'verified', 'confidence': 'high', 'reasoning': 'consistent'})
        service = ContentAnalysisService(chain, ai_settings, openai_client=client)

        result = service.verify_image(b'\x89PNG fake', 'flooded street', mime_type='image/png')

        assert result['authenticity'] == 'verified'
        assert result['image_url'] is None
        _, kwargs = client.chat.completions.create.call_args
        image_part = kwargs['messages'][1]['content'][1]
        assert image_part['image_url']['url'].startswith('data:image/png;base64,')


def resolving_to(*addresses):
    """getaddrinfo stand-in returning the given IPv4 addresses"""
    return [(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP, '', (address, 443)) for address in addresses]


class TestImageFetchSafety:
    """Server-side image downloads for Gemini refuse internal targets"""

    IMAGE_URL = 'https://images.example.com/flood.jpg'

    def test_private_dns_answer_blocks_download(self, chain, ai_settings):
        """A public hostname resolving to a private range is never fetched"""
        gemini = gemini_returning('{"authenticity": "verified"}')
        service = ContentAnalysisService(chain, ai_settings, gemini_client=gemini)

        with patch('utils.url_validator.socket.getaddrinfo', return_value=resolving_to('10.0.0.5')), \
                patch('services.content_analysis_service.requests.get') as mock_get:
            result = service.verify_image(self.IMAGE_URL, 'flooded street')

        mock_get.assert_not_called()
        gemini.models.generate_content.assert_not_called()
        assert result['provider'] == 'mock'
        assert result['authenticity'] == 'suspicious'
        assert 'non-public address' in result['error']

    def test_unresolvable_host_blocks_download(self, chain, ai_settings):
        """DNS failure is treated as unsafe"""
        service = ContentAnalysisService(chain, ai_settings, gemini_client=gemini_returning('{}'))

        with patch('utils.url_validator.socket.getaddrinfo', side_effect=socket.gaierror('no such host')), \
                patch('services.content_analysis_service.requests.get') as mock_get:
            result = service.verify_image(self.IMAGE_URL, '')

        mock_get.assert_not_called()
        assert result['provider'] == 'mock'

    def test_redirect_is_not_followed(self, chain, ai_settings):
        """A 3xx answer degrades instead of fetching the Location target"""
        gemini = gemini_returning('{"authenticity": "verified"}')
        service = ContentAnalysisService(chain, ai_settings, gemini_client=gemini)
        redirect = MagicMock(status_code=302, headers={'Location': 'https://169.254.169.254/latest/meta-data/'})

        with patch('utils.url_validator.socket.getaddrinfo', return_value=resolving_to('93.184.216.34')), \
                patch('services.content_analysis_service.requests.get', return_value=redirect) as mock_get:
            result = service.verify_image(self.IMAGE_URL, 'flooded street')

        assert mock_get.call_count == 1
        assert mock_get.call_args.kwargs['allow_redirects'] is False
        gemini.models.generate_content.assert_not_called()
        assert result['provider'] == 'mock'
        assert 'redirected' in result['error']

    def test_public_image_is_downloaded_and_analyzed(self, chain, ai_settings):
        """A public host with a direct 200 answer reaches Gemini"""
        gemini = gemini_returning('{"authenticity": "verified", "confidence": "high", "reasoning": "matches"}')
        service = ContentAnalysisService(chain, ai_settings, gemini_client=gemini)
        download = MagicMock(status_code=200, content=b'\xff\xd8 jpeg', headers={'Content-Type': 'image/jpeg'})

        with patch('utils.url_validator.socket.getaddrinfo', return_value=resolving_to('93.184.216.34')), \
                patch('services.content_analysis_service.requests.get', return_value=download):
            result = service.verify_image(self.IMAGE_URL, 'flooded street')

        assert result['provider'] == 'gemini'
        assert result['authenticity'] == 'verified'
        assert result['image_url'] == self.IMAGE_URL

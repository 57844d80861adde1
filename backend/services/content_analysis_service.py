"""
Content Analysis Service
AI classification of disaster-related text, location extraction and image verification.
Supports OpenAI (GPT-4o-mini) with Gemini fallback; a deterministic keyword
classifier produces the same output shape when neither is available.
"""
import base64
import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union
from urllib.parse import urlparse

import requests
from google.genai import types as genai_types

from services.cache_store import build_cache_key
from services.provider_chain import Err, Ok, Provider
from utils.text_patterns import best_location_guess
from utils.url_validator import resolves_to_internal_address, validate_image_url

logger = logging.getLogger(__name__)

RELEVANCE_LEVELS = ['low', 'medium', 'high']
URGENCY_LEVELS = ['low', 'medium', 'high', 'critical']
CONTENT_TYPES = ['help_request', 'help_offer', 'emergency_alert', 'information']
AUTHENTICITY_LEVELS = ['verified', 'suspicious', 'rejected']
CONFIDENCE_LEVELS = ['low', 'medium', 'high']

DISASTER_KEYWORDS = ['flood', 'fire', 'earthquake', 'help', 'emergency', 'urgent', 'sos', 'rescue']
NEED_KEYWORDS = {
    'food': ['food', 'meal', 'hungry'],
    'water': ['water', 'thirsty', 'hydration'],
    'shelter': ['shelter', 'displaced', 'homeless'],
    'medical': ['medical', 'injured', 'medicine', 'hospital'],
    'rescue': ['rescue', 'trapped', 'stranded', 'evacuation'],
}
DISASTER_TYPES = ['flood', 'fire', 'earthquake', 'hurricane', 'tornado', 'storm']

CLASSIFY_SYSTEM_PROMPT = (
    "You analyze social media and citizen reports during disasters. "
    "Respond with a JSON object containing: relevance (low|medium|high), "
    "urgency (low|medium|high|critical), disaster_type (flood, fire, earthquake, storm, "
    "general, ...), content_type (help_request|help_offer|emergency_alert|information), "
    "needs (list of strings such as food, shelter, medical, rescue), location (string or "
    "'Unknown') and keywords (list of strings)."
)

LOCATION_SYSTEM_PROMPT = (
    "Extract the most specific geographic location mentioned in the text. "
    "Respond with a JSON object containing 'location' (place name suitable for "
    "geocoding, or 'Unknown Location') and 'confidence' (low|medium|high)."
)

IMAGE_SYSTEM_PROMPT = (
    "You verify images submitted as disaster evidence. Check for signs of manipulation, "
    "AI generation, or reuse, and whether the image matches the described context. "
    "Respond with a JSON object containing: authenticity (verified|suspicious|rejected), "
    "confidence (low|medium|high), disaster_type, manipulation_signs (list of strings) "
    "and reasoning (brief explanation)."
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _pick(value, allowed: List[str], default: str) -> str:
    value = str(value or '').strip().lower()
    return value if value in allowed else default


def _as_list(value) -> List[str]:
    if isinstance(value, list):
        return [str(item) for item in value if item]
    if isinstance(value, str) and value:
        return [value]
    return []


class ContentAnalysisService:
    """Classify text, extract locations and verify images with AI fallbacks"""

    def __init__(self, chain, settings, openai_client=None, gemini_client=None):
        """
        Initialize content analysis service

        Args:
            chain: ProviderChain (owns the cache store)
            settings: ProviderSettings snapshot
            openai_client: Optional openai.OpenAI instance (primary)
            gemini_client: Optional google.genai.Client instance (fallback)
        """
        self.chain = chain
        self.settings = settings
        self.openai_client = openai_client
        self.gemini_client = gemini_client

        openai_enabled = bool(settings.openai_enabled and openai_client)
        gemini_enabled = bool(settings.gemini_enabled and gemini_client)

        if openai_enabled:
            logger.info("OpenAI client configured (primary AI provider)")
        elif gemini_enabled:
            logger.info("Only Gemini available - using as primary AI provider")
        else:
            logger.warning("No AI providers available - keyword analysis only")

        self._classify_providers = [
            Provider('openai', self._openai_classify, openai_enabled),
            Provider('gemini', self._gemini_classify, gemini_enabled),
        ]
        self._location_providers = [
            Provider('openai', self._openai_extract_location, openai_enabled),
            Provider('gemini', self._gemini_extract_location, gemini_enabled),
        ]
        self._image_providers = [
            Provider('openai', self._openai_verify_image, openai_enabled),
            Provider('gemini', self._gemini_verify_image, gemini_enabled),
        ]

    # ===== Classification =====

    def classify(self, text: str) -> Dict:
        """
        Classify disaster-related content

        Args:
            text: Post or report text

        Returns:
            Dict with relevance, urgency, disaster_type, content_type, needs,
            location, keywords, content, provider, timestamp (never raises)
        """
        text = text or ''
        outcome = self.chain.run(
            self._classify_providers,
            text,
            fallback=lambda errors: self.keyword_classify(text),
            cache_key=build_cache_key('classify', 'auto', text),
            ttl=self.settings.content_analysis_ttl,
        )
        return outcome.value

    @staticmethod
    def keyword_classify(text: str) -> Dict:
        """
        Deterministic keyword classifier with the same output shape as the AI path

        Example:
            >>> ContentAnalysisService.keyword_classify('URGENT: need rescue')['urgency']
            'critical'
        """
        lowered = (text or '').lower()
        keywords = [keyword for keyword in DISASTER_KEYWORDS if keyword in lowered]

        if 'urgent' in lowered or 'sos' in lowered:
            urgency = 'critical'
        elif 'help' in lowered or 'trapped' in lowered:
            urgency = 'high'
        elif keywords:
            urgency = 'medium'
        else:
            urgency = 'low'

        if 'need' in lowered:
            content_type = 'help_request'
        elif 'offering' in lowered or 'available' in lowered:
            content_type = 'help_offer'
        elif 'warning' in lowered or 'alert' in lowered or 'evacuat' in lowered:
            content_type = 'emergency_alert'
        else:
            content_type = 'information'

        disaster_type = next((d for d in DISASTER_TYPES if d in lowered), 'general')
        needs = [need for need, words in NEED_KEYWORDS.items() if any(w in lowered for w in words)]

        return {
            'relevance': 'high' if keywords else 'low',
            'urgency': urgency,
            'disaster_type': disaster_type,
            'content_type': content_type,
            'needs': needs,
            'location': best_location_guess(text) or 'Unknown',
            'keywords': keywords,
            'content': text,
            'provider': 'keyword',
            'timestamp': _now_iso()
        }

    def _normalize_classification(self, raw: Dict, text: str, provider: str):
        if not isinstance(raw, dict) or 'urgency' not in raw:
            return Err('response missing urgency')

        return Ok({
            'relevance': _pick(raw.get('relevance'), RELEVANCE_LEVELS, 'medium'),
            'urgency': _pick(raw.get('urgency'), URGENCY_LEVELS, 'medium'),
            'disaster_type': str(raw.get('disaster_type') or raw.get('disasterType') or 'general').lower(),
            'content_type': _pick(raw.get('content_type') or raw.get('contentType'), CONTENT_TYPES, 'information'),
            'needs': _as_list(raw.get('needs')),
            'location': raw.get('location') or 'Unknown',
            'keywords': _as_list(raw.get('keywords')),
            'content': text,
            'provider': provider,
            'timestamp': _now_iso()
        })

    def _openai_classify(self, text: str):
        raw = self._openai_json(CLASSIFY_SYSTEM_PROMPT, f'Content: "{text}"', max_tokens=300)
        if isinstance(raw, Err):
            return raw
        return self._normalize_classification(raw, text, 'openai')

    def _gemini_classify(self, text: str):
        raw = self._gemini_json(f'{CLASSIFY_SYSTEM_PROMPT}\n\nContent: "{text}"', max_tokens=300)
        if isinstance(raw, Err):
            return raw
        return self._normalize_classification(raw, text, 'gemini')

    # ===== Location extraction =====

    def extract_location(self, text: str) -> Dict:
        """
        Extract a geocodable location name from free text

        Returns:
            Dict with original_text, extracted_location, confidence, provider, timestamp
        """
        text = text or ''
        outcome = self.chain.run(
            self._location_providers,
            text,
            fallback=lambda errors: self._fallback_location(text, errors),
            cache_key=build_cache_key('extract_location', 'auto', text),
            ttl=self.settings.location_extraction_ttl,
        )
        return outcome.value

    def _location_result(self, raw, text: str, provider: str):
        if isinstance(raw, Err):
            return raw
        location = str((raw or {}).get('location') or '').strip()
        if not location:
            return Err('response missing location')
        return Ok({
            'original_text': text,
            'extracted_location': location,
            'confidence': _pick(raw.get('confidence'), CONFIDENCE_LEVELS, 'medium'),
            'provider': provider,
            'timestamp': _now_iso()
        })

    def _openai_extract_location(self, text: str):
        raw = self._openai_json(LOCATION_SYSTEM_PROMPT, f'Text: "{text}"', max_tokens=100)
        return self._location_result(raw, text, 'openai')

    def _gemini_extract_location(self, text: str):
        raw = self._gemini_json(f'{LOCATION_SYSTEM_PROMPT}\n\nText: "{text}"', max_tokens=100)
        return self._location_result(raw, text, 'gemini')

    @staticmethod
    def _fallback_location(text: str, errors: List[str]) -> Dict:
        guess = best_location_guess(text)
        result = {
            'original_text': text,
            'extracted_location': guess or 'Unknown Location',
            'confidence': 'low',
            'provider': 'regex' if guess else 'mock',
            'timestamp': _now_iso()
        }
        if not guess:
            result['error'] = 'No AI provider available: ' + '; '.join(errors)
        return result

    # ===== Image verification =====

    def verify_image(self, image: Union[str, bytes], context: str = '',
                     mime_type: Optional[str] = None) -> Dict:
        """
        Assess whether an image is authentic disaster evidence

        Args:
            image: HTTPS image URL or raw image bytes
            context: Description the image should match
            mime_type: MIME type for raw bytes (e.g., 'image/jpeg')

        Returns:
            Dict with authenticity, confidence, disaster_type, manipulation_signs,
            reasoning, provider, timestamp. Degrades to 'suspicious' so callers
            never auto-verify without a real analysis.
        """
        fingerprint = image if isinstance(image, str) else hashlib.sha256(image).hexdigest()
        cache_key = build_cache_key('verify_image', 'auto', f"{fingerprint}|{context}")

        outcome = self.chain.run(
            self._image_providers,
            image,
            context,
            mime_type,
            fallback=lambda errors: self._degraded_image(image, errors),
            cache_key=cache_key,
            ttl=self.settings.image_verification_ttl,
        )
        return outcome.value

    def _image_result(self, raw, image, provider: str):
        if isinstance(raw, Err):
            return raw
        if not isinstance(raw, dict) or 'authenticity' not in raw:
            return Err('response missing authenticity')
        return Ok({
            'image_url': image if isinstance(image, str) else None,
            'authenticity': _pick(raw.get('authenticity'), AUTHENTICITY_LEVELS, 'suspicious'),
            'confidence': _pick(raw.get('confidence'), CONFIDENCE_LEVELS, 'low'),
            'disaster_type': str(raw.get('disaster_type') or 'unknown'),
            'manipulation_signs': _as_list(raw.get('manipulation_signs')),
            'reasoning': str(raw.get('reasoning') or ''),
            'provider': provider,
            'timestamp': _now_iso()
        })

    def _openai_verify_image(self, image, context: str, mime_type: Optional[str]):
        if isinstance(image, str):
            image_url = image
        else:
            encoded = base64.b64encode(image).decode('ascii')
            image_url = f"data:{mime_type or 'image/jpeg'};base64,{encoded}"

        try:
            response = self.openai_client.chat.completions.create(
                model=self.settings.openai_model,
                messages=[
                    {"role": "system", "content": IMAGE_SYSTEM_PROMPT},
                    {"role": "user", "content": [
                        {"type": "text", "text": f"Context: {context or 'none provided'}"},
                        {"type": "image_url", "image_url": {"url": image_url}}
                    ]}
                ],
                response_format={"type": "json_object"},
                temperature=0.2,
                max_tokens=300,
                timeout=self.settings.http_timeout
            )
            raw = json.loads(response.choices[0].message.content)
        except json.JSONDecodeError as e:
            return Err(f"invalid JSON from OpenAI: {e}")
        except Exception as e:
            return Err(f"OpenAI request failed: {e}")

        return self._image_result(raw, image, 'openai')

    def _gemini_verify_image(self, image, context: str, mime_type: Optional[str]):
        if isinstance(image, str):
            is_valid, error = validate_image_url(image)
            if not is_valid:
                return Err(f"image URL rejected: {error}")
            if resolves_to_internal_address(urlparse(image).hostname):
                logger.warning(f"Refusing image fetch, host resolves to a non-public address: {urlparse(image).hostname}")
                return Err("image URL resolves to a non-public address")

            try:
                # Redirect targets are never fetched
                download = requests.get(image, timeout=self.settings.http_timeout, allow_redirects=False)
                if 300 <= download.status_code < 400:
                    return Err(f"image download redirected (HTTP {download.status_code})")
                download.raise_for_status()
            except requests.exceptions.RequestException as e:
                return Err(f"image download failed: {e}")
            data = download.content
            mime_type = download.headers.get('Content-Type', 'image/jpeg').split(';')[0]
        else:
            data = image

        try:
            response = self.gemini_client.models.generate_content(
                model=self.settings.gemini_model,
                contents=[
                    f"{IMAGE_SYSTEM_PROMPT}\n\nContext: {context or 'none provided'}",
                    genai_types.Part.from_bytes(data=data, mime_type=mime_type or 'image/jpeg')
                ],
                config={
                    'response_mime_type': 'application/json',
                    'temperature': 0.2,
                    'max_output_tokens': 300
                }
            )
            raw = json.loads(response.text)
        except json.JSONDecodeError as e:
            return Err(f"invalid JSON from Gemini: {e}")
        except Exception as e:
            return Err(f"Gemini request failed: {e}")

        return self._image_result(raw, image, 'gemini')

    @staticmethod
    def _degraded_image(image, errors: List[str]) -> Dict:
        return {
            'image_url': image if isinstance(image, str) else None,
            'authenticity': 'suspicious',
            'confidence': 'low',
            'disaster_type': 'unknown',
            'manipulation_signs': [],
            'reasoning': 'Image could not be analyzed; manual review required',
            'provider': 'mock',
            'error': 'All image analysis providers failed: ' + '; '.join(errors),
            'timestamp': _now_iso()
        }

    # ===== AI transport =====

    def _openai_json(self, system_prompt: str, prompt: str, max_tokens: int = 200):
        """Call OpenAI in JSON mode. Returns the parsed dict or Err."""
        try:
            response = self.openai_client.chat.completions.create(
                model=self.settings.openai_model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt}
                ],
                response_format={"type": "json_object"},
                temperature=0.3,
                max_tokens=max_tokens,
                timeout=self.settings.http_timeout
            )
            return json.loads(response.choices[0].message.content)
        except json.JSONDecodeError as e:
            return Err(f"invalid JSON from OpenAI: {e}")
        except Exception as e:
            return Err(f"OpenAI request failed: {e}")

    def _gemini_json(self, prompt: str, max_tokens: int = 200):
        """Call Gemini with a JSON response type. Returns the parsed dict or Err."""
        try:
            response = self.gemini_client.models.generate_content(
                model=self.settings.gemini_model,
                contents=prompt,
                config={
                    'response_mime_type': 'application/json',
                    'temperature': 0.3,
                    'max_output_tokens': max_tokens
                }
            )
            return json.loads(response.text)
        except json.JSONDecodeError as e:
            return Err(f"invalid JSON from Gemini: {e}")
        except Exception as e:
            return Err(f"Gemini request failed: {e}")

"""
sourcing/generator.py

Smart Finder report generation against an OpenAI-compatible chat
completions endpoint.

The generator turns a report form into the report JSON the frontend
renders (executive summary, market overview, supplier analysis, costs,
risks, timeline, recommendations, next steps).

Usage:
    from sourcing.generator import ReportGenerator

    generator = ReportGenerator()
    report_data = generator({'productName': 'Steel water bottle', ...})

Any callable taking the form dict and returning a dict can stand in for a
ReportGenerator (tests pass plain functions).

Version History:
    2026-01-12: Initial implementation
"""

import json
import re
from typing import Optional

import requests

from config import REPORT_API_URL, REPORT_API_KEY, REPORT_MODEL
from errors import NotConfigured, RequestFailed
from retry import with_retry


REQUEST_TIMEOUT = 90
MAX_TOKENS = 3000

SYSTEM_PROMPT = (
    "You are a professional sourcing consultant with expertise in global supply chains, "
    "manufacturing, and procurement. Provide detailed, accurate, and actionable insights."
)

REPORT_SCHEMA = """{
  "executiveSummary": "2-3 sentence high-level summary of the sourcing opportunity and key findings",
  "marketOverview": {"marketSize": "...", "growthRate": "...", "keyTrends": ["..."]},
  "supplierAnalysis": {
    "topRegions": [{"region": "...", "advantages": ["..."], "considerations": ["..."]}],
    "recommendedSuppliers": [{"name": "...", "location": "City, Country", "strengths": ["..."], "estimatedCost": "..."}]
  },
  "costBreakdown": {"unitCost": "...", "toolingCost": "...", "shippingCost": "...", "totalEstimate": "...", "factors": ["..."]},
  "riskAssessment": {"overallRisk": "Low/Medium/High", "risks": [{"category": "...", "level": "Low/Medium/High", "mitigation": "..."}]},
  "timeline": {"sampling": "...", "tooling": "...", "production": "...", "shipping": "...", "total": "..."},
  "recommendations": ["..."],
  "nextSteps": ["..."]
}"""

REQUIRED_SECTIONS = ('executiveSummary', 'recommendations')

_JSON_OBJECT_RE = re.compile(r'\{.*\}', re.DOTALL)


def build_prompt(form_data: dict) -> str:
    lines = [
        "Generate a comprehensive sourcing analysis report in JSON format for the following product:",
        "",
        f"Product: {form_data.get('productName', '')}",
        f"Category: {form_data.get('category', '')}",
        f"Target Region: {form_data.get('targetRegion', '')}",
        f"Budget: {form_data.get('budget', '')}",
        f"Quantity: {form_data.get('quantity', '')}",
    ]
    if form_data.get('additionalRequirements'):
        lines.append(f"Additional Requirements: {form_data['additionalRequirements']}")

    lines += [
        "",
        "Return ONLY valid JSON (no markdown) with this structure:",
        REPORT_SCHEMA,
        "",
        "Be specific, professional, and realistic. Include 3-5 recommended suppliers, "
        "3-5 risks, and 3-5 recommendations.",
    ]
    return "\n".join(lines)


def parse_report(content: str) -> dict:
    """
    Extract the report object from model output.

    Tolerates markdown fences and prose around the JSON.

    Raises:
        ValueError: no usable JSON object
    """
    if not content:
        raise ValueError('Empty response')

    match = _JSON_OBJECT_RE.search(content)
    if not match:
        raise ValueError('No JSON object in response')

    report = json.loads(match.group(0))
    if not isinstance(report, dict):
        raise ValueError('Report is not a JSON object')

    missing = [key for key in REQUIRED_SECTIONS if key not in report]
    if missing:
        raise ValueError(f"Report missing sections: {', '.join(missing)}")

    return report


class ReportGenerator:
    """Calls the completions endpoint; one retry on transient failures."""

    def __init__(
        self,
        api_url: str = REPORT_API_URL,
        api_key: str = REPORT_API_KEY,
        model: str = REPORT_MODEL,
        session: Optional[requests.Session] = None,
        retry_delay: float = 2.0,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.session = session or requests.Session()
        self.retry_delay = retry_delay

    def _complete(self, form_data: dict) -> str:
        payload = {
            'model': self.model,
            'messages': [
                {'role': 'system', 'content': SYSTEM_PROMPT},
                {'role': 'user', 'content': build_prompt(form_data)},
            ],
            'temperature': 0.7,
            'max_tokens': MAX_TOKENS,
            'response_format': {'type': 'json_object'},
        }

        try:
            response = self.session.post(
                self.api_url,
                json=payload,
                headers={'Authorization': f'Bearer {self.api_key}'},
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            raise RequestFailed(f'Report provider request failed: {e}')

        if response.status_code >= 400:
            print(f"[ReportGenerator] Provider HTTP {response.status_code}: {response.text[:300]}")
            raise RequestFailed(f'Report provider returned HTTP {response.status_code}', response.status_code)

        try:
            return response.json()['choices'][0]['message']['content']
        except (ValueError, KeyError, IndexError, TypeError):
            raise RequestFailed('Unexpected response from report provider', response.status_code)

    def __call__(self, form_data: dict) -> dict:
        if not self.api_key:
            raise NotConfigured('Report generation is not configured')

        content = with_retry(
            lambda: self._complete(form_data),
            delay=self.retry_delay,
            label='Report generation',
            retry_on=(RequestFailed,),
            should_retry=lambda e: e.is_transient,
        )

        try:
            return parse_report(content)
        except ValueError as e:
            print(f"[ReportGenerator] Could not parse report: {e}")
            raise RequestFailed('Report provider returned malformed JSON')

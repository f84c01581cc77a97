"""Gemini-backed transaction categorizer."""
import logging
from typing import Optional

import google.generativeai as genai
from pydantic import ValidationError

from config import get_settings
from errors import CategorizerUnavailable, InvalidArgument
from schemas import CategorizeRequest, CategorizeResponse

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = """You are a financial assistant. Categorize the following transactions into the provided categories.

Available Categories:
{categories}

Transactions to Categorize:
{transactions}

Rules:
1. Return ONLY a JSON object. No markdown.
2. Format: {{"results": [{{"id": "TRANSACTION_ID", "categoryId": "CATEGORY_ID", "confidence": 0.0-1.0}}]}}
3. The category Type MUST match the transaction Type.
   - If the transaction Type is INCOME, pick an INCOME category.
   - If the transaction Type is EXPENSE, pick an EXPENSE category.
   - Make your best guess even if the description is vague. Never return null for categoryId.
   - If unsure, pick the "Other Expense" or "Other Income" category.
4. "id" in the output must match the "[ID: ...]" given in the input. Every transaction ID needs a result.
"""


def build_prompt(request: CategorizeRequest) -> str:
    categories = "\n".join(
        f"- {item.name} (ID: {item.id}, Type: {item.type.value})"
        for item in request.categories
    )
    transactions = "\n".join(
        f'[ID: {item.id}] Type: {item.type.value.upper()}, Note: "{item.note}", '
        f"Amount: {item.amount}"
        for item in request.transactions
    )
    return PROMPT_TEMPLATE.format(categories=categories, transactions=transactions)


def extract_json(content: str) -> str:
    if "```json" in content:
        return content.split("```json")[1].split("```")[0].strip()
    if "```" in content:
        return content.split("```")[1].split("```")[0].strip()
    return content.strip()


class GeminiCategorizer:
    def __init__(self, api_key: Optional[str] = None, model_id: Optional[str] = None):
        settings = get_settings()
        api_key = api_key or settings.gemini_api_key
        if not api_key:
            raise InvalidArgument("Missing Gemini API key; configure it in settings")
        self.model_id = model_id or settings.gemini_model
        genai.configure(api_key=api_key)
        self.model = genai.GenerativeModel(self.model_id)

    def categorize(self, request: CategorizeRequest) -> CategorizeResponse:
        generation_config = genai.types.GenerationConfig(temperature=0.2)
        try:
            response = self.model.generate_content(
                build_prompt(request), generation_config=generation_config
            )
            content = response.text
        except Exception as exc:
            logger.error(f"categorizer: model={self.model_id} error={exc!r}")
            raise CategorizerUnavailable(f"Gemini API error: {exc}") from exc

        try:
            return CategorizeResponse.model_validate_json(extract_json(content))
        except ValidationError as exc:
            logger.error(f"categorizer: model={self.model_id} unparsable response")
            raise CategorizerUnavailable("Gemini returned an unusable response") from exc

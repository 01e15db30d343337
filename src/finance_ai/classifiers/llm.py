import json
import os

import openai
from openai import AsyncOpenAI

from finance_ai.core import settings
from finance_ai.errors import ClassifierError
from finance_ai.logger import get_logger
from finance_ai.models import LLMRequest, LLMSuccess

from .base import TransactionClassifier

logger = get_logger(__name__)

CATEGORIES = (
    "Alimentación", "Transporte", "Vivienda", "Servicios", "Salud", "Educación",
    "Entretenimiento", "Compras", "Inversiones", "Impuestos", "Transferencias",
    "Salarios", "Supermercado", "Combustible", "Bebidas", "Comidas", "Compras online",
    "Fintech", "Bancos", "Suscripciones", "Seguros", "Deportes", "Moda y ropa",
    "Calzado", "Tecnología", "Electrodomésticos", "Belleza", "Mascotas", "Flores",
    "Cultura", "Servicios de eventos", "Servicios automotrices", "Salud y fitness",
    "Servicios de entrega", "Efectivo", "Cargos bancarios", "Ferretería y hogar",
    "Tiendas departamentales", "Farmacias", "Clínicas", "Veterinarias", "Gimnasios",
    "Librerías", "Tiendas de conveniencia", "Sin clasificar", "Ingresos",
)

KNOWN_MODELS = ("gpt-4o-mini", "gpt-4o", "gpt-4")

SYSTEM_PROMPT = (
    "Eres un experto analista financiero argentino. Tu trabajo es categorizar "
    "transacciones bancarias con precisión. Responde SIEMPRE en formato JSON válido."
)

HISTORY_LIMIT = 15
DEFAULT_CONFIDENCE = 0.7
MIN_CONFIDENCE = 0.1


def format_amount(value: float) -> str:
    """Format with es-AR separators: 1.234,56"""
    text = f"{value:,.2f}"
    return text.replace(",", "_").replace(".", ",").replace("_", ".")


def build_prompt(request: LLMRequest) -> str:
    amount_type = "expense" if request.amount < 0 else "income"
    formatted_amount = f"{request.currency} {format_amount(abs(request.amount))}"
    category_lines = "\n".join(f"- {cat}" for cat in CATEGORIES)

    prompt = f"""Actúa como un analista de datos financieros experto en el mercado argentino.
Tu tarea es categorizar la siguiente transacción bancaria con alta precisión.

**TRANSACCIÓN A ANALIZAR:**
- Descripción: "{request.description}"
- Comercio Detectado: "{request.merchant or 'No especificado'}"
- Monto: {formatted_amount} ({amount_type})
- Moneda: {request.currency}

**CATEGORÍAS DISPONIBLES:**
{category_lines}

**DIRECTRICES:**
1. Reconoce marcas, abreviaturas y servicios de Argentina (ej. "MP", "Coto", "Afip", "Sube").
2. Un gasto negativo NO puede ser "Ingresos" ni "Salarios".
3. Solo clasifica como "Ingresos", "Salarios", "Transferencias" o "Inversiones" si el monto es positivo.
4. Asigna un score de confianza (0.0 - 1.0). Sé conservador si la descripción es ambigua.
5. Razonamiento breve y conciso."""

    if request.recent_transactions:
        history = "\n".join(
            f'- "{t.description}" ({t.amount}) -> {t.category or "?"}'
            for t in request.recent_transactions[:HISTORY_LIMIT]
        )
        prompt += (
            "\n\n**HISTORIAL RECIENTE:**\n"
            "Transacciones pasadas de este usuario. Úsalas para detectar patrones.\n"
            f"{history}"
        )

    if request.user_profile and request.user_profile.common_merchants:
        prompt += f"\n\n**COMERCIOS FRECUENTES:** {', '.join(request.user_profile.common_merchants)}"

    prompt += """

**FORMATO DE SALIDA (JSON):**
{
  "category": "Nombre exacto de la categoría",
  "confidence": 0.95,
  "reasoning": "Por qué elegiste esta categoría",
  "suggestedSubcategory": "Subcategoría opcional"
}"""
    return prompt


def resolve_category(raw: str) -> str:
    if raw in CATEGORIES:
        return raw
    lowered = raw.lower()
    for category in CATEGORIES:
        if category.lower() == lowered:
            return category
    logger.warning("LLM returned unknown category '%s', using 'Sin clasificar'.", raw)
    return "Sin clasificar"


def parse_response(content: str | None) -> LLMSuccess:
    if not content:
        raise ClassifierError("parse", "Empty response from LLM")
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as e:
        raise ClassifierError("parse", f"Failed to parse LLM response: {content[:200]}") from e
    if not isinstance(payload, dict):
        raise ClassifierError("parse", f"Unexpected LLM payload: {content[:200]}")

    category = resolve_category(str(payload.get("category") or "Sin clasificar"))

    try:
        confidence = float(payload.get("confidence") or DEFAULT_CONFIDENCE)
    except (TypeError, ValueError):
        confidence = DEFAULT_CONFIDENCE
    confidence = max(MIN_CONFIDENCE, min(1.0, confidence))

    return LLMSuccess(
        category=category,
        confidence=confidence,
        reasoning=str(payload.get("reasoning") or "Categorización basada en IA"),
        subcategory=payload.get("suggestedSubcategory"),
    )


class LLMClassifier(TransactionClassifier):
    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
    ):
        self.api_key = api_key or settings.get_openai_api_key()
        self.model = model or os.getenv("OPENAI_MODEL") or settings.DEFAULT_OPENAI_MODEL
        if self.model not in KNOWN_MODELS:
            logger.warning("Model %s is not in the known list, using it anyway.", self.model)
        self.client: AsyncOpenAI | None = None
        if self.api_key:
            self.client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=base_url or os.getenv("OPENAI_BASE_URL") or None,
                timeout=timeout if timeout is not None else settings.get_env_float(
                    "OPENAI_TIMEOUT", settings.DEFAULT_OPENAI_TIMEOUT
                ),
                max_retries=max_retries if max_retries is not None else settings.get_env_int(
                    "OPENAI_MAX_RETRIES", settings.DEFAULT_OPENAI_MAX_RETRIES, min_value=0
                ),
            )

    @property
    def available(self) -> bool:
        return self.client is not None

    async def classify(self, request: LLMRequest) -> LLMSuccess:
        if self.client is None:
            raise ClassifierError("unavailable", "OPENAI_API_KEY is not configured")

        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(request)},
                ],
                temperature=0.2,
                max_tokens=500,
                response_format={"type": "json_object"},
            )
        except openai.OpenAIError as e:
            logger.error(
                "LLM error: %s (model=%s, description='%s')",
                e,
                self.model,
                request.description[:50],
            )
            raise ClassifierError("api", str(e)) from e

        content = completion.choices[0].message.content if completion.choices else None
        return parse_response(content)

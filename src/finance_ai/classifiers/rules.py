import json
import os
import re
from dataclasses import dataclass

from finance_ai.domain.merchants import fold_text, strip_accents
from finance_ai.errors import ConfigurationError
from finance_ai.logger import get_logger
from finance_ai.models import RuleHit, RuleMatch, RuleMiss

logger = get_logger(__name__)


@dataclass(frozen=True)
class Rule:
    category: str
    pattern: str
    strength: float
    label: str = ""

    def compile(self) -> re.Pattern[str]:
        # Matched against fold_text output, so accents are folded here too
        return re.compile(rf"\b(?:{strip_accents(self.pattern)})\b", re.IGNORECASE)


SUBSCRIPTION_SERVICES = (
    "Netflix", "HBO Max", "Disney+", "Disney Plus", "Amazon Prime", "Prime Video",
    "Paramount+", "Apple TV", "Mubi", "Crunchyroll", "YouTube Premium", "Spotify",
    "Apple Music", "Deezer", "Tidal", "Xbox Game Pass", "PlayStation Plus", "Nintendo Switch Online",
    "ChatGPT", "Claude Pro", "GitHub Copilot", "Google One", "iCloud", "Dropbox",
    "Microsoft 365", "Office 365", "Adobe", "Canva", "Notion", "Duolingo", "Audible",
    "Kindle Unlimited", "LinkedIn Premium", "Discord Nitro", "Twitch",
)


def _alternation(names: tuple[str, ...]) -> str:
    folded = sorted({fold_text(name) for name in names if fold_text(name)}, key=len, reverse=True)
    return "|".join(re.escape(name) for name in folded)


# Ordered: on equal strength the earlier rule wins.
DEFAULT_RULES: tuple[Rule, ...] = (
    Rule("Salarios", r"sueldo|haberes|salario|acreditacion de haberes|nomina", 0.92, "salary"),
    Rule("Suscripciones", _alternation(SUBSCRIPTION_SERVICES), 0.9, "subscription"),
    Rule("Supermercado", r"carrefour|coto|jumbo|disco|dia|vea|chango mas|la anonima|changomas|supermercado", 0.9, "supermarket"),
    Rule("Combustible", r"ypf|axion|shell|puma|combustible|nafta|estacion de servicio", 0.9, "fuel"),
    Rule("Transporte", r"uber|cabify|didi|sube|subte|peaje|autopista|colectivo|tren", 0.85, "transport"),
    Rule("Servicios", r"edenor|edesur|epec|epe|aysa|assa|metrogas|naturgy|camuzzi|litoral gas", 0.88, "utility"),
    Rule("Servicios", r"claro|personal|movistar|fibertel|flow|telecentro|telecom|iplan", 0.85, "telecom"),
    Rule("Impuestos", r"afip|arca|arba|agip|rentas|monotributo|impuesto|abl", 0.85, "tax"),
    Rule("Farmacias", r"farmacia|farmacity|dr ahorro|farmaonline", 0.85, "pharmacy"),
    Rule("Salud", r"osde|swiss medical|galeno|medife|omint|prepaga|obra social", 0.85, "health"),
    Rule("Servicios de entrega", r"rappi|pedidos ya|pedidosya", 0.8, "delivery"),
    Rule("Compras online", r"mercado libre|mercadolibre|meli|amazon|tiendanube|aliexpress|shein", 0.75, "marketplace"),
    Rule("Gimnasios", r"gimnasio|megatlon|sportclub|smart fit|gym", 0.8, "gym"),
    Rule("Educación", r"universidad|colegio|cuota escolar|matricula|udemy|coursera|platzi", 0.8, "education"),
    Rule("Efectivo", r"extraccion|cajero|atm|retiro de efectivo", 0.8, "cash"),
    Rule("Cargos bancarios", r"comision|mantenimiento de cuenta|cargo por servicio|iva percepcion", 0.75, "bank-fee"),
    Rule("Inversiones", r"plazo fijo|fci|fondo comun|cedear|dolar mep|inversion", 0.7, "investment"),
    Rule("Transferencias", r"transferencia|transf|cvu|cbu|alias", 0.55, "transfer"),
    Rule("Fintech", r"mercado pago|mercadopago|uala|naranja x|brubank|lemon", 0.5, "fintech"),
)


class RuleEngine:
    """Keyword/regex classifier over a merchant + description text bag."""

    def __init__(self, rules: tuple[Rule, ...] | list[Rule] = DEFAULT_RULES) -> None:
        self.rules = tuple(rules)
        self._compiled = [(rule, rule.compile()) for rule in self.rules]

    @classmethod
    def from_file(cls, path: str, include_defaults: bool = True) -> "RuleEngine":
        try:
            with open(path, encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read rules file {path}: {e}") from e

        if not isinstance(raw, list):
            raise ConfigurationError(f"Rules file {path} must contain a JSON list")

        custom: list[Rule] = []
        for index, entry in enumerate(raw):
            try:
                rule = Rule(
                    category=str(entry["category"]),
                    pattern=str(entry["pattern"]),
                    strength=float(entry["strength"]),
                    label=str(entry.get("label") or f"custom-{index}"),
                )
                rule.compile()
            except (KeyError, TypeError, ValueError, re.error) as e:
                raise ConfigurationError(f"Invalid rule #{index} in {path}: {e}") from e
            custom.append(rule)

        logger.info("[RULES] Loaded %d custom rules from %s", len(custom), path)
        # Custom rules first so they win ties against defaults
        rules = custom + list(DEFAULT_RULES) if include_defaults else custom
        return cls(rules)

    def match(self, text: str) -> RuleMatch:
        bag = fold_text(text or "")
        if not bag:
            return RuleMiss()

        best: Rule | None = None
        for rule, regex in self._compiled:
            if not regex.search(bag):
                continue
            if best is None or rule.strength > best.strength:
                best = rule

        if best is None:
            return RuleMiss()
        return RuleHit(
            category=best.category,
            strength=best.strength,
            reason=f"rule:{best.category}:{best.label or 'pattern'}",
        )


_default_engine: RuleEngine | None = None


def get_default_engine() -> RuleEngine:
    global _default_engine
    if _default_engine is None:
        rules_path = os.getenv("RULES_PATH")
        _default_engine = RuleEngine.from_file(rules_path) if rules_path else RuleEngine()
    return _default_engine


def rules_category(text: str) -> RuleMatch:
    return get_default_engine().match(text)

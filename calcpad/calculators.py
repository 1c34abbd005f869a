import re
import logging
from abc import ABC, abstractmethod
from collections import namedtuple
from typing import Optional, Tuple, Any, List

from calcpad import config
from calcpad.currency import CurrencyService
from calcpad.errors import CalcError, ParseFailure
from calcpad.evaluator import MathEvaluator, ASSIGNMENT_PATTERN, HISTORY_READ_PATTERN
from calcpad.textstats import TextAnalyzer
from calcpad.units import UnitConverter, format_number

logger = logging.getLogger(__name__)


# One calculated line: `display` is what goes after ' = ', `variable` is set for assignments
LineResult = namedtuple("LineResult", ["display", "value", "kind", "variable"])

# Lines ending with '= 42' already carry a result
EXISTING_RESULT_PATTERN = re.compile(r"=\s*[\d.,]+\s*$")
SEPARATOR = "---"


def format_math_result(value: float) -> str:
    if value == int(value):
        return str(int(value))
    return f"{value:.4f}"


# --- Calculator Interface and Implementations ---
class CalculatorInterface(ABC):
    """A line classifier.

    parse() returns (None, None) when the line is not its kind, (None, error)
    when it is but could not be calculated, and (result, None) on success.
    """

    @abstractmethod
    def parse(self, query: str) -> Tuple[Optional[Any], Optional[str]]:
        pass


class CurrencyCalculator(CalculatorInterface):
    """'100 USD to EUR', '$100 to EUR' or '100 EUR' (to the base currency)."""

    def __init__(self, service: CurrencyService, settings: Optional[config.Settings] = None):
        self.service = service
        self.settings = settings or service.settings

    def parse(self, query: str) -> Tuple[Optional[Any], Optional[str]]:
        converted = self.service.parse_and_convert(query, self.settings.base_currency)
        if converted is None:
            return None, None
        result, _, to_code = converted
        return LineResult(f"{result:.2f} {to_code}", result, "currency", None), None


class UnitCalculator(CalculatorInterface):
    """'5 km to miles', '100 C in F', '1 GB as MB'."""

    def __init__(self, converter: UnitConverter):
        self.converter = converter

    def parse(self, query: str) -> Tuple[Optional[Any], Optional[str]]:
        request = self.converter.parse(query)
        if request is None:
            return None, None
        try:
            value, canonical = self.converter.convert_value(
                request.amount, request.from_unit, request.to_unit
            )
        except CalcError as e:
            return None, f"Unit Error: {e}"
        return LineResult(f"{format_number(value)} {canonical}", value, "unit", None), None


class MathCalculator(CalculatorInterface):
    """Arithmetic, variables, functions and history aggregates."""

    def __init__(self, evaluator: MathEvaluator):
        self.evaluator = evaluator

    def parse(self, query: str) -> Tuple[Optional[Any], Optional[str]]:
        if not self.evaluator.is_math_expression(query) and not self._is_math_statement(query):
            return None, None
        try:
            evaluation = self.evaluator.evaluate_line(query)
        except ParseFailure as e:
            logger.debug(f"Not a math expression '{query}': {e}")
            return None, None
        except CalcError as e:
            return None, f"Error: {e}"

        display = None if evaluation.variable else format_math_result(evaluation.value)
        return LineResult(display, evaluation.value, "math", evaluation.variable), None

    @staticmethod
    def _is_math_statement(query: str) -> bool:
        # 'sum' alone and 'name: value' fail the character heuristic but are still math
        return bool(HISTORY_READ_PATTERN.match(query) or ASSIGNMENT_PATTERN.match(query))


class CalcSession:
    """Calc-mode session: one evaluator plus the shared converters.

    Lines are tried against currency, unit and math calculators in that
    order; the first one that recognizes the line wins.
    """

    def __init__(
        self,
        currency: CurrencyService,
        units: UnitConverter,
        settings: Optional[config.Settings] = None,
        evaluator: Optional[MathEvaluator] = None,
    ):
        self.settings = settings or currency.settings
        self.evaluator = evaluator or MathEvaluator()
        self.currency = currency
        self.units = units
        self.analyzer = TextAnalyzer()
        # The calculators are ordered by specificity - most specific first, most general last
        self.calculators: List[CalculatorInterface] = [
            CurrencyCalculator(currency, self.settings),
            UnitCalculator(units),
            MathCalculator(self.evaluator),
        ]

    def calculate(self, line: str) -> Tuple[Optional[LineResult], Optional[str]]:
        """Calculates one line, returning (LineResult, None) or (None, error)."""
        query = line.strip()
        if not query:
            return None, None

        for calculator in self.calculators:
            try:
                result, error = calculator.parse(query)
            except Exception as e:
                logger.error(
                    f"Internal error in {type(calculator).__name__} for '{query}': {e}",
                    exc_info=True,
                )
                return None, "An internal error occurred during calculation."

            if error:
                logger.warning(f"Calculator {type(calculator).__name__} failed for '{query}': {error}")
                return None, error
            if result is not None:
                logger.debug(f"Calculator {type(calculator).__name__} handled '{query}': {result.display}")
                return result, None

        return None, None

    def annotate(self, text: str) -> List[str]:
        """Returns the ' = result' suffix (or '') for every line of a note.

        Lines are evaluated top to bottom in this session, so assignments
        made early in the note are visible further down.
        """
        suffixes = []
        for line in text.split("\n"):
            trimmed = line.strip()
            if not trimmed or trimmed == SEPARATOR:
                suffixes.append("")
                continue
            # 'x = 10' still has to assign; other '... = 42' lines are already annotated
            if EXISTING_RESULT_PATTERN.search(trimmed) and not ASSIGNMENT_PATTERN.match(trimmed):
                suffixes.append("")
                continue

            result, _ = self.calculate(trimmed)
            if result is None or result.display is None:
                suffixes.append("")
            else:
                suffixes.append(f" = {result.display}")
        return suffixes

    def annotated_text(self, text: str) -> str:
        lines = text.split("\n")
        return "\n".join(line + suffix for line, suffix in zip(lines, self.annotate(text)))

    def analyze(self, text: str, kind: str) -> str:
        return self.analyzer.analyze_note(text, kind)

    def reset(self):
        self.evaluator.clear()

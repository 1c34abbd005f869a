import re
import math
import logging
from collections import namedtuple
from typing import Dict, List, Callable, Optional, Tuple

from calcpad.errors import (
    ParseFailure,
    UnknownIdentifier,
    DivisionByZero,
    MathDomainError,
)
from calcpad.lexer import Cursor

logger = logging.getLogger(__name__)


# Result of evaluating one line. `variable` is set for assignments, which the
# caller should not annotate; `recorded` tells whether the value went into the history.
Evaluation = namedtuple("Evaluation", ["value", "variable", "recorded"])


def _round_half_away(x: float) -> float:
    return math.copysign(math.floor(abs(x) + 0.5), x)


AGGREGATE_FUNCTIONS = ("sum", "avg", "average", "min", "max", "count")

MATH_FUNCTIONS: Dict[str, Callable[[float], float]] = {
    "sqrt": math.sqrt,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "asin": math.asin,
    "acos": math.acos,
    "atan": math.atan,
    "log": math.log10,
    "log10": math.log10,
    "ln": math.log,
    "exp": math.exp,
    "ceil": lambda x: float(math.ceil(x)),
    "floor": lambda x: float(math.floor(x)),
    "round": _round_half_away,
    "abs": abs,
}

CONSTANTS = {
    "pi": math.pi,
    "e": math.e,
}

# 'x = 10' or 'name: value'
ASSIGNMENT_PATTERN = re.compile(r"^([a-zA-Z_]\w*)\s*[:=]\s*(.+)$")

# A line that only reads the history, e.g. 'sum' or 'avg()'
HISTORY_READ_PATTERN = re.compile(
    r"^\s*(sum|avg|average|min|max|count)\s*(?:\(\s*\))?\s*=?\s*$", re.IGNORECASE
)

PATH_PREFIXES = ("/", "~")
URL_PATTERN = re.compile(r"^https?://|^ftp://|^file://", re.IGNORECASE)
FUNCTION_CALL_PATTERN = re.compile(
    r"\b(sqrt|sin|cos|tan|asin|acos|atan|log|log10|ln|exp|ceil|floor|round|abs|sum|avg|average|min|max|count)\s*\(",
    re.IGNORECASE,
)
MATH_CHARSET_PATTERN = re.compile(r"^[\d\s\+\-\*\/\%\^\(\)\.\,\=a-zA-Z_eE]+$")
# Any operator, assignment sign, or a minus that is not the first character
OPERATOR_PATTERN = re.compile(r"[\+\*\/\%\^\=]|(?<=.)-")


def aggregate(name: str, values: List[float]) -> float:
    """Reduces values with one of the aggregate functions.

    Empty input yields 0 for every aggregate.
    """
    name = name.lower()
    if name == "count":
        return float(len(values))
    if not values:
        return 0.0
    if name == "sum":
        return math.fsum(values)
    if name in ("avg", "average"):
        return math.fsum(values) / len(values)
    if name == "min":
        return min(values)
    if name == "max":
        return max(values)
    raise UnknownIdentifier(name, "function")


class MathEvaluator:
    """Recursive-descent evaluator for calc-mode lines.

    Grammar, lowest precedence first::

        expression := term (('+' | '-') term)*
        term       := factor (('*' | '/' | '%') factor)*
        factor     := ['-'] primary [('^' | '**') factor]
        primary    := number ['%'] | '(' expression ')' | identifier ['(' args ')']

    The evaluator keeps its own variables and the history of top-level
    results that zero-argument aggregates (``sum``, ``avg``, ...) read.
    """

    def __init__(self):
        self._variables: Dict[str, float] = {}
        self._history: List[float] = []

    # --- Session state ---

    def set_variable(self, name: str, value: float):
        self._variables[name] = float(value)

    def variables(self) -> List[str]:
        return list(self._variables.keys())

    def variable_values(self) -> Dict[str, float]:
        return dict(self._variables)

    def history(self) -> List[float]:
        return list(self._history)

    def clear(self):
        self._variables.clear()
        self._history.clear()

    # --- Classification ---

    @staticmethod
    def is_math_expression(line: str) -> bool:
        """Heuristic used by the editor to decide whether a line is math."""
        trimmed = line.strip()
        if not trimmed:
            return False

        # File paths
        if trimmed.startswith(PATH_PREFIXES) or ":/" in trimmed or "\\" in trimmed:
            return False

        if URL_PATTERN.search(trimmed):
            return False

        if FUNCTION_CALL_PATTERN.search(trimmed):
            return True

        if not MATH_CHARSET_PATTERN.match(trimmed):
            return False

        return OPERATOR_PATTERN.search(trimmed) is not None

    # --- Evaluation ---

    def evaluate(self, expression: str) -> float:
        """Evaluates one line and returns its value.

        Raises a CalcError subclass when the line cannot be evaluated.
        """
        return self.evaluate_line(expression).value

    def evaluate_line(self, expression: str) -> Evaluation:
        expr = expression.strip()
        if not expr:
            raise ParseFailure("Empty expression")

        value, variable = self._evaluate_statement(expr)
        if variable:
            return Evaluation(value, variable, False)

        match = HISTORY_READ_PATTERN.match(expr)
        if match and match.group(1) not in self._variables:
            return Evaluation(value, None, False)

        self._history.append(value)
        return Evaluation(value, None, True)

    def _evaluate_statement(self, text: str) -> Tuple[float, Optional[str]]:
        """Evaluates an assignment or an expression, returning (value, assigned name).

        'a = b = 5' assigns right to left; each assignment commits as soon as
        its own right-hand side succeeds.
        """
        assignment = ASSIGNMENT_PATTERN.match(text.strip())
        if not assignment:
            return self._evaluate_text(text), None

        name = assignment.group(1)
        value, _ = self._evaluate_statement(assignment.group(2))
        self._variables[name] = value
        logger.debug(f"Assigned {name} = {value}")
        return value, name

    def _evaluate_text(self, text: str) -> float:
        cursor = Cursor(text)
        value = self._parse_expression(cursor)

        # A trailing '=' asks the editor for the result; anything else is garbage
        cursor.skip_whitespace()
        if cursor.accept("="):
            cursor.skip_whitespace()
        if not cursor.at_end():
            raise ParseFailure(f"Unexpected '{cursor.peek()}' at position {cursor.pos}")

        return self._finite(value)

    @staticmethod
    def _finite(value: float) -> float:
        if math.isnan(value) or math.isinf(value):
            raise MathDomainError("Result is not a finite number")
        return value

    def _parse_expression(self, cursor: Cursor) -> float:
        result = self._parse_term(cursor)
        cursor.skip_whitespace()
        while not cursor.at_end():
            if cursor.accept("+"):
                result += self._parse_term(cursor)
            elif cursor.accept("-"):
                result -= self._parse_term(cursor)
            else:
                break
            cursor.skip_whitespace()
        return result

    def _parse_term(self, cursor: Cursor) -> float:
        result = self._parse_factor(cursor)
        cursor.skip_whitespace()
        while not cursor.at_end():
            if cursor.accept("*"):
                result *= self._parse_factor(cursor)
            elif cursor.accept("/"):
                divisor = self._parse_factor(cursor)
                if divisor == 0:
                    raise DivisionByZero("Division")
                result /= divisor
            elif cursor.accept("%"):
                divisor = self._parse_factor(cursor)
                if divisor == 0:
                    raise DivisionByZero("Modulo")
                result = math.fmod(result, divisor)
            else:
                break
            cursor.skip_whitespace()
        return result

    def _parse_factor(self, cursor: Cursor) -> float:
        cursor.skip_whitespace()
        negative = cursor.accept("-")
        if negative:
            cursor.skip_whitespace()

        result = self._parse_primary(cursor)

        # Right-associative: the exponent is itself a factor
        cursor.skip_whitespace()
        if cursor.accept("^") or cursor.accept("**"):
            exponent = self._parse_factor(cursor)
            result = self._power(result, exponent)

        return -result if negative else result

    @staticmethod
    def _power(base: float, exponent: float) -> float:
        try:
            return math.pow(base, exponent)
        except (ValueError, OverflowError) as e:
            raise MathDomainError(f"Cannot raise {base} to {exponent}: {e}")

    def _parse_primary(self, cursor: Cursor) -> float:
        cursor.skip_whitespace()
        if cursor.accept("("):
            value = self._parse_expression(cursor)
            cursor.expect(")")
            return value

        if cursor.at_identifier():
            return self._parse_identifier(cursor)

        value = cursor.read_number()

        # '50%' is a percentage, '10%3' is left for the term rule as modulo
        cursor.skip_whitespace()
        if cursor.peek() == "%" and not cursor.next_non_space(cursor.pos + 1).isdigit():
            cursor.accept("%")
            value /= 100.0
        return value

    def _parse_identifier(self, cursor: Cursor) -> float:
        name = cursor.read_identifier()
        cursor.skip_whitespace()

        if cursor.accept("("):
            return self._call_function(name, cursor)

        if name in self._variables:
            return self._variables[name]
        if name.lower() in AGGREGATE_FUNCTIONS:
            return aggregate(name, self._history)
        if name in CONSTANTS:
            return CONSTANTS[name]
        raise UnknownIdentifier(name)

    def _call_function(self, name: str, cursor: Cursor) -> float:
        func_name = name.lower()

        if func_name in AGGREGATE_FUNCTIONS:
            args = self._parse_arguments(cursor)
            if not args:
                return aggregate(func_name, self._history)
            return aggregate(func_name, args)

        func = MATH_FUNCTIONS.get(func_name)
        if func is None:
            raise UnknownIdentifier(name, "function")

        arg = self._parse_expression(cursor)
        cursor.expect(")")
        try:
            return self._finite(func(arg))
        except (ValueError, OverflowError) as e:
            raise MathDomainError(f"{func_name}({arg}) is undefined: {e}")

    def _parse_arguments(self, cursor: Cursor) -> List[float]:
        args: List[float] = []
        cursor.skip_whitespace()
        if cursor.accept(")"):
            return args
        while True:
            args.append(self._parse_expression(cursor))
            cursor.skip_whitespace()
            if cursor.accept(","):
                continue
            cursor.expect(")")
            return args

"""Error types raised by the calculation engine."""


class CalcError(Exception):
    """Base class for everything the engine raises on purpose."""


class ParseFailure(CalcError):
    """The text is not an expression of the kind being parsed."""


# --- Expression evaluation ---


class EvalError(CalcError):
    pass


class UnknownIdentifier(EvalError):
    def __init__(self, name: str, kind: str = "variable"):
        super().__init__(f"Unknown {kind} '{name}'")
        self.name = name
        self.kind = kind


class DivisionByZero(EvalError):
    def __init__(self, operation: str = "Division"):
        super().__init__(f"{operation} by zero")


class MathDomainError(EvalError):
    pass


# --- Unit conversion ---


class UnitError(CalcError):
    pass


class UnknownUnit(UnitError):
    def __init__(self, unit: str):
        super().__init__(f"Unknown unit '{unit}'")
        self.unit = unit


class CrossCategoryUnits(UnitError):
    def __init__(self, from_unit: str, to_unit: str):
        super().__init__(f"Cannot convert between '{from_unit}' and '{to_unit}'")
        self.from_unit = from_unit
        self.to_unit = to_unit


# --- Currency ---


class CurrencyError(CalcError):
    pass


class UnknownCurrency(CurrencyError):
    def __init__(self, code: str):
        super().__init__(f"Unknown currency '{code}'")
        self.code = code


class NetworkError(CurrencyError):
    pass


class InvalidResponse(CurrencyError):
    pass

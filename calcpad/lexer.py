from typing import Optional

from calcpad.errors import ParseFailure


class Cursor:
    """Character cursor over an expression string.

    Only dot is a decimal separator here; commas separate function arguments.
    Comma-as-decimal normalization has to happen before text reaches the cursor.
    """

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def at_end(self) -> bool:
        return self.pos >= len(self.text)

    def peek(self, offset: int = 0) -> str:
        index = self.pos + offset
        if index < len(self.text):
            return self.text[index]
        return ""

    def skip_whitespace(self):
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def next_non_space(self, start: Optional[int] = None) -> str:
        """Returns the first non-whitespace character at or after start, without moving."""
        index = self.pos if start is None else start
        while index < len(self.text) and self.text[index].isspace():
            index += 1
        return self.text[index] if index < len(self.text) else ""

    def accept(self, token: str) -> bool:
        """Consumes token if the text continues with it."""
        if self.text.startswith(token, self.pos):
            self.pos += len(token)
            return True
        return False

    def expect(self, token: str):
        self.skip_whitespace()
        if not self.accept(token):
            found = self.peek() or "end of input"
            raise ParseFailure(f"Expected '{token}' at position {self.pos}, found {found}")

    def at_identifier(self) -> bool:
        ch = self.peek()
        return bool(ch) and (ch.isalpha() or ch == "_")

    def at_number(self) -> bool:
        ch = self.peek()
        return bool(ch) and (ch.isdigit() or ch == ".")

    def read_identifier(self) -> str:
        start = self.pos
        while self.pos < len(self.text) and (
            self.text[self.pos].isalnum() or self.text[self.pos] == "_"
        ):
            self.pos += 1
        if start == self.pos:
            raise ParseFailure(f"Expected identifier at position {start}")
        return self.text[start:self.pos]

    def read_number(self) -> float:
        """Reads digits, at most one decimal point and an optional exponent."""
        start = self.pos
        seen_dot = False
        while self.pos < len(self.text):
            ch = self.text[self.pos]
            if ch.isdigit():
                self.pos += 1
            elif ch == "." and not seen_dot:
                seen_dot = True
                self.pos += 1
            else:
                break

        mantissa = self.text[start:self.pos]
        if not any(c.isdigit() for c in mantissa):
            self.pos = start
            raise ParseFailure(f"Expected number at position {start}")

        # Exponent is only taken when digits follow: "2e" leaves the 'e' alone
        if self.peek() in ("e", "E"):
            index = self.pos + 1
            if index < len(self.text) and self.text[index] in "+-":
                index += 1
            digits_start = index
            while index < len(self.text) and self.text[index].isdigit():
                index += 1
            if index > digits_start:
                self.pos = index

        literal = self.text[start:self.pos]
        try:
            return float(literal)
        except ValueError:
            raise ParseFailure(f"Invalid number '{literal}'")

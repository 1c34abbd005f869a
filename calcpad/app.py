import sys
import uuid
import atexit
import logging
import argparse
from pathlib import Path
from typing import Optional, Dict

import flask
from flask import request, jsonify

from calcpad import config
from calcpad.calculators import CalcSession
from calcpad.currency import CurrencyService
from calcpad.evaluator import ASSIGNMENT_PATTERN, AGGREGATE_FUNCTIONS, MATH_FUNCTIONS
from calcpad.textstats import ANALYSIS_KINDS, TextAnalyzer
from calcpad.units import UnitConverter

# --- Logging Setup ---
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class Engine:
    """The shared services a front end needs, built once and passed around."""

    def __init__(
        self,
        settings: Optional[config.Settings] = None,
        currency: Optional[CurrencyService] = None,
        units: Optional[UnitConverter] = None,
    ):
        self.settings = settings or config.Settings.load()
        self.currency = currency or CurrencyService(self.settings)
        self.units = units or UnitConverter()
        self.currency.on_rates_updated(self._remember_refresh)
        self.currency.on_error(self._report_refresh_error)

    def new_session(self) -> CalcSession:
        return CalcSession(self.currency, self.units, self.settings)

    def _remember_refresh(self):
        # The service stamps last_currency_update; persisting it is ours
        self.settings.save()

    @staticmethod
    def _report_refresh_error(message: str):
        logger.warning(f"Currency rates could not be refreshed, using cached rates: {message}")


# --- Flask App Setup ---


def create_app(engine: Optional[Engine] = None) -> flask.Flask:
    app = flask.Flask(__name__)
    app.config["DEBUG"] = config.DEBUG_MODE

    engine = engine or Engine()
    app.config["ENGINE"] = engine

    # In-memory sessions; variables live as long as the session does
    sessions: Dict[str, CalcSession] = {}
    analyzer = TextAnalyzer()

    def get_query():
        data = request.get_json(silent=True)
        if not data or "query" not in data:
            return None, (jsonify({"error": "Missing 'query' in JSON payload"}), 400)
        query = str(data["query"]).strip()
        if not query:
            return None, (jsonify({"error": "Query cannot be empty"}), 400)
        return query, None

    def session_not_found(session_id):
        return jsonify({"error": f"Session '{session_id}' not found"}), 404

    @app.route("/calculate", methods=["POST"])
    def calculate():
        """Performs a calculation without requiring a session."""
        query, error_response = get_query()
        if error_response:
            return error_response

        # For sessionless calculation, we don't want variable assignments
        if ASSIGNMENT_PATTERN.match(query):
            return jsonify({"error": "Variable assignments require a session. Use /sessions endpoint."}), 400

        result, error = engine.new_session().calculate(query)
        if error:
            return jsonify({"error": error}), 400
        if result is None:
            logger.warning(f"No-session: No calculator could parse expression: '{query}'")
            return jsonify({"error": f"Could not understand or parse expression: '{query}'"}), 400
        return jsonify({"result": result.display, "value": result.value, "kind": result.kind}), 200

    @app.route("/sessions", methods=["POST"])
    def create_session():
        """Creates a new calculation session."""
        session_id = str(uuid.uuid4())
        sessions[session_id] = engine.new_session()
        logger.info(f"Session {session_id} created")
        return jsonify({"session_id": session_id}), 201

    @app.route("/sessions/<string:session_id>", methods=["GET"])
    def get_session_vars(session_id):
        """Retrieves the variables for a given session."""
        session = sessions.get(session_id)
        if session is None:
            return session_not_found(session_id)
        return jsonify(session.evaluator.variable_values()), 200

    @app.route("/sessions/<string:session_id>", methods=["DELETE"])
    def delete_session(session_id):
        """Deletes a calculation session."""
        if sessions.pop(session_id, None) is None:
            return session_not_found(session_id)
        logger.info(f"Session {session_id} deleted")
        return "", 204

    @app.route("/sessions/<string:session_id>/calculate", methods=["POST"])
    def calculate_in_session(session_id):
        """Performs calculation or assignment within a session."""
        session = sessions.get(session_id)
        if session is None:
            return session_not_found(session_id)

        query, error_response = get_query()
        if error_response:
            return error_response

        result, error = session.calculate(query)
        if error:
            return jsonify({"error": error}), 400
        if result is None:
            logger.warning(f"Session {session_id}: No calculator could parse expression: '{query}'")
            return jsonify({"error": f"Could not understand or parse expression: '{query}'"}), 400
        if result.variable:
            return jsonify({"variable_set": result.variable, "result": result.value}), 200
        return jsonify({"result": result.display, "value": result.value, "kind": result.kind}), 200

    @app.route("/sessions/<string:session_id>/annotate", methods=["POST"])
    def annotate_note(session_id):
        """Annotates every line of a note, calc-mode style."""
        session = sessions.get(session_id)
        if session is None:
            return session_not_found(session_id)

        data = request.get_json(silent=True)
        if not data or "text" not in data:
            return jsonify({"error": "Missing 'text' in JSON payload"}), 400
        return jsonify({"lines": session.annotate(str(data["text"]))}), 200

    @app.route("/analyze", methods=["POST"])
    def analyze():
        data = request.get_json(silent=True)
        if not data or "text" not in data:
            return jsonify({"error": "Missing 'text' in JSON payload"}), 400
        kind = str(data.get("type", "sum")).lower()
        if kind not in ANALYSIS_KINDS:
            return jsonify({"error": f"Unknown analysis type '{kind}'"}), 400
        return jsonify({"result": analyzer.analyze_note(str(data["text"]), kind)}), 200

    @app.route("/units", methods=["GET"])
    def list_categories():
        return jsonify({"categories": engine.units.categories()}), 200

    @app.route("/units/<string:category>", methods=["GET"])
    def list_units(category):
        units = engine.units.units_in_category(category)
        if not units:
            return jsonify({"error": f"Unknown unit category '{category}'"}), 404
        return jsonify({"category": category.lower(), "units": units}), 200

    @app.route("/currencies", methods=["GET"])
    def list_currencies():
        return jsonify({
            "base": engine.settings.base_currency,
            "currencies": engine.currency.supported_currencies(),
            "last_update": engine.settings.last_currency_update,
        }), 200

    @app.route("/currencies/refresh", methods=["POST"])
    def refresh_currencies():
        engine.currency.refresh_rates()
        return jsonify({"status": "refresh started"}), 202

    return app


# --- CLI Interface ---

CLI_COMMANDS = ["help", "vars", "clear", "units", "currencies", "refresh", "exit", "quit"]

HELP_TEXT = """
Usage examples:
  2 + 3 * 4            - Arithmetic with precedence, ^ or ** for powers
  100 * 20%            - Percentages (10 % 3 is modulo)
  price = 100          - Assign a variable (price: 100 works too)
  sqrt(16), round(2.5) - Math functions
  sum, avg, count      - Aggregate the results so far; sum(1, 2, 3) for explicit values
  10 km to miles       - Convert units (also 'in' / 'as')
  100 USD to EUR       - Convert currencies, $100 to EUR works too
  100 EUR              - Convert to your base currency

Commands:
  vars                 - Show all variables
  clear                - Forget variables and results
  units [category]     - List unit categories or the units in one
  currencies           - List known currency codes
  refresh              - Refresh currency rates
  help                 - Show this help message
  exit/quit            - Exit the calculator
"""


def setup_readline(session: CalcSession) -> bool:
    """Enables history and tab completion when readline is available."""
    try:
        import readline
    except ImportError:
        return False

    histfile = str(config.history_path())
    try:
        readline.read_history_file(histfile)
        readline.set_history_length(1000)
    except (FileNotFoundError, OSError):
        pass
    atexit.register(readline.write_history_file, histfile)

    def completer(text, state):
        words = list(CLI_COMMANDS)
        words += list(MATH_FUNCTIONS.keys()) + list(AGGREGATE_FUNCTIONS)
        words += session.evaluator.variables()
        for category in session.units.categories():
            words += session.units.units_in_category(category)
        words += session.currency.supported_currencies()
        matches = sorted({w for w in words if w.startswith(text)})
        if state < len(matches):
            return matches[state]
        return None

    readline.set_completer_delims(" \t\n()+-*/%^=,")
    readline.parse_and_bind("tab: complete")
    readline.set_completer(completer)
    return True


def run_cli_mode(engine: Engine):
    """Run calculator in interactive CLI mode."""
    session = engine.new_session()
    has_readline = setup_readline(session)

    print("calcpad - Press Ctrl+C or type 'exit' to leave")
    print("Enter calculations like: '2 + 2', 'x = 10', '5 km to miles' or '100 USD to EUR'")
    if not has_readline:
        print("Note: readline is not available, so there is no history or tab completion")

    while True:
        try:
            line = input("> ")
        except (EOFError, KeyboardInterrupt):
            print()
            break

        query = line.strip()
        if not query:
            continue

        command = query.lower()
        if command in ("exit", "quit"):
            break
        elif command == "help":
            print(HELP_TEXT)
        elif command == "vars":
            variables = session.evaluator.variable_values()
            if not variables:
                print("No variables defined.")
            for name, value in variables.items():
                print(f"  {name} = {value:g}")
        elif command == "clear":
            session.reset()
            print("Variables and results cleared.")
        elif command == "units" or command.startswith("units "):
            category = query[5:].strip()
            if category:
                units = session.units.units_in_category(category)
                print(", ".join(units) if units else f"Unknown unit category '{category}'")
            else:
                print(", ".join(session.units.categories()))
        elif command == "currencies":
            print(", ".join(session.currency.supported_currencies()))
        elif command == "refresh":
            print("Refreshing currency rates...")
            engine.currency.refresh_rates().result()
            print(f"{len(engine.currency.supported_currencies())} currencies available.")
        else:
            result, error = session.calculate(query)
            if error:
                print(error)
            elif result is None:
                print(f"Could not understand '{query}'")
            elif result.variable:
                print(f"{result.variable} = {format_value(result.value)}")
            else:
                print(result.display)

    engine.currency.shutdown()
    print("Thank you for using calcpad!")


def format_value(value: float) -> str:
    return str(int(value)) if value == int(value) else f"{value:.4f}"


def read_text(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    return Path(path).read_text(encoding="utf-8")


# --- Entry Points ---


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="calcpad - scratchpad calculator")
    parser.add_argument("--serve", action="store_true", help="Run the HTTP API server")
    parser.add_argument("--host", default=config.WEB_HOST, help="Server host")
    parser.add_argument("--port", type=int, default=config.WEB_PORT, help="Server port")
    parser.add_argument("--note", metavar="FILE", help="Print a note with calc-mode results ('-' for stdin)")
    parser.add_argument(
        "--analyze", nargs=2, metavar=("TYPE", "FILE"),
        help="Run sum, avg or count over a note ('-' for stdin)",
    )
    parser.add_argument("--refresh", action="store_true", help="Refresh currency rates and exit")
    return parser


def main(argv=None):
    """Main entry point that decides between web, batch and interactive mode."""
    args = build_parser().parse_args(argv)

    if args.analyze:
        kind, path = args.analyze
        if kind.lower() not in ANALYSIS_KINDS:
            print(f"Unknown analysis '{kind}', expected one of {', '.join(ANALYSIS_KINDS)}")
            return 2
        print(TextAnalyzer().analyze_note(read_text(path), kind).lstrip("\n"))
        return 0

    engine = Engine()

    if args.refresh:
        updated = engine.currency.refresh_rates().result()
        engine.currency.shutdown()
        print("Rates updated." if updated else "Fiat rates unchanged; using cached rates.")
        return 0

    if args.note:
        session = engine.new_session()
        print(session.annotated_text(read_text(args.note)))
        return 0

    if args.serve:
        # Refresh in the background so the first requests use cached rates
        engine.currency.refresh_rates()
        print(f"Starting web server on http://{args.host}:{args.port}")
        create_app(engine).run(host=args.host, port=args.port)
        return 0

    run_cli_mode(engine)
    return 0


if __name__ == "__main__":
    sys.exit(main())

import asyncio
import sys
from pathlib import Path

from jexi.jexi_runtime import Interpreter
from jexi.jexi_printer import Printer
from jexi.jexi_datatypes import ABSENT

# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)

def print_side_effects(result):
    for effect in result.side_effects:
        if effect.get('topics') == ['stdout']:
            print(effect.get('message', ''))

def print_value(printer, value):
    if value is not None and value is not ABSENT:
        print(printer.pformat(value))

async def run_script_file(file_path: str):
    """Run a Jexi script file non-interactively and exit with appropriate status."""
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    interpreter = Interpreter(options={"source_dir": str(p.parent.resolve())})
    printer = Printer()
    result = await interpreter.run_source(source, relaxed=p.suffix.lower() != ".json")
    print_side_effects(result)
    if result.status != 'success':
        print(result.format_error(), file=sys.stderr)
        raise SystemExit(1)
    print_value(printer, result.value)

async def main():
    """Run a script file when provided, otherwise start the interactive REPL."""
    if len(sys.argv) > 1:
        arg = sys.argv[1]
        if not arg.startswith("-"):
            await run_script_file(arg)
            return

    print("Jexi REPL v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")

    # Setup
    interpreter = Interpreter(options={"source_dir": str(Path.cwd())})
    printer = Printer()
    env = interpreter.create_env()
    buffer = []

    # REPL Loop
    while not interpreter.globals.exit_requested:
        try:
            raw = await ainput(".. " if buffer else ">> ")
            if raw == "":
                raise EOFError
            line = raw.rstrip("\n")

            if not buffer:
                if not line.strip():
                    continue
                if line.strip() == "exit":
                    break
            elif not line.strip():
                # A blank line abandons an unfinished form and reports why
                result = await interpreter.run_source("\n".join(buffer), env, allow_incomplete=False)
                buffer = []
                print(result.format_error(), file=sys.stderr)
                continue

            buffer.append(line)
            result = await interpreter.run_source("\n".join(buffer), env)

            if result.status == 'incomplete':
                # Keep reading until the form is closed
                continue
            buffer = []

            if result.status == 'error':
                print_side_effects(result)
                # Pretty, location-aware message
                print(result.format_error(), file=sys.stderr)
                continue

            print_side_effects(result)
            print_value(printer, result.value)

        except EOFError:
            print("\nExiting.")
            break
        except Exception as e:
            buffer = []
            print(f"Error: {e}", file=sys.stderr)

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")

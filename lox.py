import argparse
import asyncio
import sys
from pathlib import Path

from lox.lox_config import LoxConfig
from lox.lox_errors import Diagnostics
from lox.lox_runtime import ScriptRunner
from lox.lox_scanner import Scanner

# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)

def build_config(args) -> LoxConfig:
    """Layers the YAML config file, the environment and the command line, in that order."""
    config = LoxConfig.from_yaml(args.config) if args.config else LoxConfig()
    config.use_print_buf = True
    config.silence_errors = True
    config.apply_env()
    for entry in (p for arg in args.load_path for p in arg.split(":") if p):
        if entry not in config.load_path:
            config.load_path.append(entry)
    for key in (k.strip() for arg in args.debug for k in arg.split(",") if k.strip()):
        if key not in config.debug_keys:
            config.debug_keys.append(key)
    config.argv = list(args.script_args)
    return config

def parse_args(argv):
    parser = argparse.ArgumentParser(prog="lox", description="Run a Lox script or start the REPL.")
    parser.add_argument("-f", "--file", help="script file to run")
    parser.add_argument("-L", dest="load_path", action="append", default=[], help="colon-separated LOAD_PATH entries")
    parser.add_argument("-D", dest="debug", action="append", default=[], help="comma-separated debug keys")
    parser.add_argument("-c", "--config", help="YAML config file")
    parser.add_argument("script", nargs="?", help="script file to run")
    if "--" in argv:
        cut = argv.index("--")
        args = parser.parse_args(argv[:cut])
        args.script_args = argv[cut + 1:]
    else:
        args = parser.parse_args(argv)
        args.script_args = []
    return args

def print_side_effects(result):
    for effect in result.side_effects:
        if effect.get('topics') == ['stdout']:
            print(effect.get('message', ''), end="")

async def run_script_file(runner: ScriptRunner, file_path: str) -> int:
    """Run a Lox script file non-interactively and return its exit code."""
    p = Path(file_path)
    if not p.is_file():
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        return 1
    result = await runner.run_file(p)
    print_side_effects(result)
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
    return result.exit_code

def needs_more(source: str) -> bool:
    scanner = Scanner(source, None, Diagnostics(silent=True))
    scanner.scan_tokens()
    return scanner.brace_depth > 0

async def main(argv=None):
    """Run a script file when provided, otherwise start the interactive REPL."""
    args = parse_args(sys.argv[1:] if argv is None else argv)
    runner = ScriptRunner(build_config(args))
    script = args.file or args.script
    if script:
        return await run_script_file(runner, script)

    print("Lox REPL v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")

    buffer = ""
    while True:
        try:
            raw = await ainput(".. " if buffer else ">> ")
            if raw == "":
                raise EOFError
            line = raw.strip()

            if not buffer:
                if not line:
                    continue
                if line == "exit":
                    break

            buffer = f"{buffer}\n{line}" if buffer else line
            if needs_more(buffer):
                continue
            source, buffer = buffer, ""
            if not source.endswith((";", "}")):
                source += ";"

            result = await runner.handle_script(source, "(repl)")
            print_side_effects(result)

            if result.status == 'error':
                print(result.format_error(), file=sys.stderr)
                continue
            if result.status == 'exit':
                return result.exit_code

            if result.value is not None:
                print(runner.stringify(result.value))

        except EOFError:
            print("\nExiting.")
            break
        except Exception as e:
            buffer = ""
            print(f"Error: {e}", file=sys.stderr)
    runner.interpreter.side_effects = []
    result = runner.run_exit_hooks()
    print_side_effects(result)
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
    return result.exit_code

if __name__ == "__main__":
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nExiting.")

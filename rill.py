import asyncio
import sys
import traceback
from pathlib import Path

from rill.rill_config import load_config
from rill.rill_datatypes import InternalConsistencyError, RillError
from rill.rill_runtime import CycleState, create_repl

# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)

def internal_error(e: InternalConsistencyError):
    print("Internal error: the compiler, executor and symbol extractor disagree.", file=sys.stderr)
    traceback.print_exception(type(e), e, e.__traceback__, file=sys.stderr)
    raise SystemExit(2)

async def run_script_file(file_path: str, repl=None):
    """Feed a script file through the REPL line by line and exit with appropriate status."""
    repl = repl or create_repl(load_config())
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    try:
        for line in source.splitlines():
            if not line.strip() and not repl.buffer:
                continue
            result = repl.compile_and_eval(line)
            if result.state in (CycleState.COMPILE_ERROR, CycleState.EVAL_ERROR, CycleState.HISTORY_MISMATCH):
                raise SystemExit(1)
        if repl.buffer:
            # Close a trailing block the way a blank line would.
            result = repl.compile_and_eval("")
            if not result.ok:
                print(f"Error: {file_path} ends inside an incomplete snippet", file=sys.stderr)
                raise SystemExit(1)
    except InternalConsistencyError as e:
        internal_error(e)
    finally:
        repl.close()

async def main(argv=None):
    """Run a script file when provided, otherwise start the interactive REPL."""
    argv = sys.argv[1:] if argv is None else argv
    try:
        config = load_config()
    except RillError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)

    if argv:
        arg = argv[0]
        # Treat argv[0] as a script file when it's not a flag; run_script_file handles missing files
        if not arg.startswith("-"):
            await run_script_file(arg, create_repl(config))
            return

    print(config.banner)

    # Setup
    repl = create_repl(config)

    # REPL Loop
    try:
        while True:
            try:
                raw = await ainput(repl.prompt())
                if raw == "":
                    raise EOFError
                line = raw.rstrip("\r\n")

                if repl.is_quit(line):
                    break
                # Blank lines only matter while a snippet is open
                if not line.strip() and not repl.buffer:
                    continue

                if not repl.buffer and line.startswith(":"):
                    repl.execute_command(line)
                else:
                    repl.compile_and_eval(line)

            except EOFError:
                print("\nExiting.")
                break
            except InternalConsistencyError as e:
                internal_error(e)
            except Exception as e:
                # Errors raised outside the reported compile/eval paths
                print(f"Error: {e}", file=sys.stderr)
    finally:
        repl.close()

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")

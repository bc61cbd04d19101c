import argparse
import logging
import os
import subprocess
import sys
import tempfile
from importlib.metadata import PackageNotFoundError, version
from typing import List, NoReturn, Optional, Tuple

from parsy import Parser, any_char
from parsy import string as strp

from .parse import (
    JmakeError,
    Justfile,
    JustfileReadError,
    Recipe,
    Variable,
    Variadic,
    parse_stream,
)

########################################################################################
# Global Variables and Types                                                           #
########################################################################################


try:
    __version__ = version("jmake")
except PackageNotFoundError:
    __version__ = "unknown"

JUSTFILE_NAMES = ["justfile", "Justfile", ".justfile"]
MAKE = "make"
SHELL = "/bin/bash"
LIST_HEADING = "Available recipes:"
LIST_PREFIX = "    "

# Escape characters are not allowed in format strings
newline = "\n"


class JustfileNotFoundError(JmakeError):
    pass


class UnknownRecipeError(JmakeError):
    def __init__(self, name: str) -> None:
        super().__init__(f"unknown recipe: {name}")
        self.name = name


class ArgumentBindingError(JmakeError):
    def __init__(self, recipe: str, param: str, message: str) -> None:
        super().__init__(message)
        self.recipe = recipe
        self.param = param


class MakeError(JmakeError):
    def __init__(self, message: str, returncode: int) -> None:
        super().__init__(message)
        self.returncode = returncode


########################################################################################
# Utility Functions                                                                    #
########################################################################################


def quote_string(instring: str) -> str:
    return "'" + instring.replace("'", "'\"'\"'") + "'"


def make_quote(instring: str) -> str:
    """
    Quote a string for the shell inside a make recipe line, where `$` must be
    doubled to survive make's own expansion.
    """
    return quote_string(instring).replace("$", "$$")


def pad_line(
    line: str,
    terminator: str = " #",
    line_length: int = 80,
    ignore_overflow: bool = False,
) -> str:
    if len(line) > line_length and not ignore_overflow:
        raise ValueError(f"Line has length {len(line)} > {line_length}:\n{line}")
    return line + " " * (line_length - len(line) - len(terminator)) + terminator


def between(start: str, end: str) -> Parser:
    return strp(start) >> any_char.until(strp(end)).concat() << strp(end)


########################################################################################
# Line Conversion                                                                      #
########################################################################################

# Spans are consumed left to right in one pass, so converted output is never
# rescanned for the other delimiter
INTERPOLATION = between("{{", "}}").map(lambda expression: f"$({expression.strip()})")
interpolated = (INTERPOLATION | any_char).many().concat()
BACKTICK = between("`", "`").map(
    lambda command: f"$(shell {interpolated.parse(command)})"
)
line_converter = (INTERPOLATION | BACKTICK | any_char).many().concat()


def convert_line(line: str) -> str:
    return line_converter.parse(line)


########################################################################################
# Recipe Listing and Argument Mapping                                                  #
########################################################################################


def listed_recipes(justfile: Justfile) -> List[Recipe]:
    if justfile.has_list_default:
        return justfile.recipes[1:]
    return list(justfile.recipes)


def list_recipes(justfile: Justfile) -> str:
    entries: List[Tuple[str, str]] = []
    seen_aliases = set()
    for recipe in listed_recipes(justfile):
        signature = " ".join([recipe.name, *(str(p) for p in recipe.params)])
        entries.append((signature, recipe.doc))
        for alias in justfile.aliases:
            if alias.name in seen_aliases:
                continue
            if justfile.resolve_alias(alias.name) == recipe.name:
                seen_aliases.add(alias.name)
                entries.append((alias.name, f"alias for `{recipe.name}`"))

    width = max((len(signature) for signature, doc in entries if doc), default=0)
    lines = [LIST_HEADING]
    for signature, doc in entries:
        if doc:
            lines.append(f"{LIST_PREFIX}{signature.ljust(width)} # {doc}")
        else:
            lines.append(f"{LIST_PREFIX}{signature}")
    return newline.join(lines) + newline


def map_arguments(recipe: Recipe, args: List[str]) -> List[str]:
    """
    Bind positional command-line arguments to recipe parameters, returning
    `name=value` assignments to pass to make. Parameters with defaults that
    receive no argument are left to the `?=` assignment in the Makefile.
    """
    assignments = []
    remaining = list(args)
    for param in recipe.params:
        if param.variadic is not Variadic.NONE:
            if param.variadic is Variadic.ONE_OR_MORE and not remaining:
                raise ArgumentBindingError(
                    recipe.name,
                    param.name,
                    f"recipe '{recipe.name}' requires at least one argument "
                    f"for '{param.name}'",
                )
            if remaining:
                assignments.append(f"{param.name}={' '.join(remaining)}")
                remaining = []
        elif remaining:
            assignments.append(f"{param.name}={remaining.pop(0)}")
        elif param.required:
            raise ArgumentBindingError(
                recipe.name,
                param.name,
                f"recipe '{recipe.name}' requires argument '{param.name}'",
            )
    return assignments


########################################################################################
# Makefile Generation                                                                  #
########################################################################################


def generate(justfile: Justfile) -> str:
    recipes = listed_recipes(justfile)
    recipe_names = [r.name for r in recipes]
    synthesize_help = "help" not in recipe_names

    def header_comment(text: str) -> str:
        border = "#" * 80
        return f"""{border}
{newline.join(pad_line(f'# {line}') for line in text.splitlines())}
{border}"""

    def autogen_comment() -> str:
        return header_comment(
            f"""Generated by jmake version {__version__} from a justfile.

Do not edit. Run `jmake --dump` to regenerate."""
        )

    def variable(v: Variable) -> str:
        value = f"$(shell {v.value})" if v.backtick else v.value
        export = "export " if v.export else ""
        return f"{export}{v.name} := {value}"

    def variables() -> str:
        if not justfile.variables:
            return ""
        return f"""
{newline.join(variable(v) for v in justfile.variables)}
"""

    def phony() -> str:
        targets = [r.name for r in justfile.recipes]
        if "help" not in targets:
            targets.append("help")
        return f".PHONY: {' '.join(targets)}"

    def default_goal() -> str:
        if justfile.has_list_default or not recipes:
            return ".DEFAULT_GOAL := help"
        return f".DEFAULT_GOAL := {recipes[0].name}"

    def help_target() -> str:
        if not synthesize_help:
            return ""
        body = newline.join(
            f"\t@printf '%s\\n' {make_quote(line)}"
            for line in list_recipes(justfile).splitlines()
        )
        return f"""help:
{body}

"""

    def dependency(r: Recipe, name: str) -> str:
        name = justfile.resolve_alias(name)
        if justfile.has_list_default and name == justfile.recipes[0].name:
            return "help"
        if name not in recipe_names:
            logging.warning(
                f"Recipe {r.name} depends on {name}, which is not a recipe in the "
                "justfile."
            )
        return name

    def recipe(r: Recipe) -> str:
        lines = []
        if r.doc:
            lines.append(f"# {r.doc}")
        for p in r.params:
            if p.variadic is Variadic.NONE and p.default:
                lines.append(f"{r.name}: {p.name} ?= {p.default}")
        prerequisites = " ".join(dependency(r, d) for d in r.dependencies)
        lines.append(f"{r.name}: {prerequisites}".rstrip())
        lines.extend(f"\t{convert_line(line)}" for line in r.lines)
        return newline.join(lines)

    return f"""{autogen_comment()}

SHELL := {SHELL}
{variables()}
{phony()}
{default_goal()}

{help_target()}{(newline * 2).join(recipe(r) for r in recipes)}
"""


########################################################################################
# Running Recipes                                                                      #
########################################################################################


def find_justfile(start: str) -> str:
    directory = os.path.abspath(start)
    while True:
        for filename in JUSTFILE_NAMES:
            path = os.path.join(directory, filename)
            if os.path.isfile(path):
                return path
        parent = os.path.dirname(directory)
        if parent == directory:
            raise JustfileNotFoundError("no justfile found")
        directory = parent


def load_justfile(justfile_path: str) -> Justfile:
    try:
        with open(justfile_path) as f:
            return parse_stream(f)
    except FileNotFoundError as e:
        raise JustfileNotFoundError(f"opening justfile: {e}") from e
    except OSError as e:
        raise JustfileReadError(f"opening justfile: {e}") from e


def run_make(
    makefile: str,
    target: str,
    assignments: List[str],
    cwd: str,
    dry_run: bool = False,
) -> None:
    # The generated Makefile only lives as long as the make invocation
    with tempfile.TemporaryDirectory(prefix="jmake-") as tmpdir:
        makefile_path = os.path.join(tmpdir, "jmake.mk")
        with open(makefile_path, "w") as f:
            f.write(makefile)

        command = [MAKE, "--no-print-directory", "-f", makefile_path, target]
        command.extend(assignments)
        logging.debug(f"Running `{' '.join(command)}` in {cwd}")
        if dry_run:
            print(" ".join(command))
            return

        try:
            result = subprocess.run(command, cwd=cwd)
        except FileNotFoundError as e:
            raise MakeError(f"running {MAKE}: {e}", 127) from e
        if result.returncode != 0:
            raise MakeError(
                f"{MAKE} exited with status {result.returncode}", result.returncode
            )


########################################################################################
# Main Function                                                                        #
########################################################################################


def main(
    justfile_path: Optional[str],
    invocation: List[str],
    list_only: bool = False,
    dump: bool = False,
    dry_run: bool = False,
) -> None:
    if justfile_path is None:
        justfile_path = find_justfile(os.getcwd())
    justfile = load_justfile(justfile_path)

    if list_only:
        sys.stdout.write(list_recipes(justfile))
        return
    if dump:
        sys.stdout.write(generate(justfile))
        return

    if invocation:
        target, *arguments = invocation
    elif justfile.recipes:
        target, arguments = justfile.recipes[0].name, []
    else:
        raise JmakeError("no recipes found in justfile")

    target = justfile.resolve_alias(target)
    recipe = justfile.find_recipe(target)
    if recipe is None:
        raise UnknownRecipeError(target)
    if justfile.has_list_default and recipe is justfile.recipes[0]:
        sys.stdout.write(list_recipes(justfile))
        return

    run_make(
        generate(justfile),
        recipe.name,
        map_arguments(recipe, arguments),
        cwd=os.path.dirname(os.path.abspath(justfile_path)),
        dry_run=dry_run,
    )


class ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def cli_entrypoint(argv: Optional[List[str]] = None) -> None:
    parser = ArgumentParser(prog="jmake", description="Run justfile recipes via make")
    parser.add_argument(
        "-l", "--list", action="store_true", help="List available recipes"
    )
    parser.add_argument(
        "-d", "--dump", action="store_true", help="Print the generated Makefile"
    )
    parser.add_argument("-f", "--file", action="store", help="Input justfile path")
    parser.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Print the make command instead of running it",
    )
    parser.add_argument("-v", "--version", action="store_true", help="Show version")
    parser.add_argument(
        "--verbose", action="store_true", help="Log parsing and make invocations"
    )
    parser.add_argument(
        "invocation",
        nargs=argparse.REMAINDER,
        help="Recipe to run, followed by its arguments",
    )
    parsed_args = parser.parse_args(argv)

    if parsed_args.version:
        print(f"jmake {__version__}")
        return

    logging.basicConfig(
        format="%(levelname)s: %(message)s",
        level=logging.DEBUG if parsed_args.verbose else logging.WARNING,
    )

    try:
        main(
            parsed_args.file,
            parsed_args.invocation,
            list_only=parsed_args.list,
            dump=parsed_args.dump,
            dry_run=parsed_args.dry_run,
        )
    except JmakeError as e:
        logging.error(e)
        sys.exit(1)


if __name__ == "__main__":
    cli_entrypoint()

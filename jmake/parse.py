import argparse
import dataclasses
import json
import logging
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, TextIO, Union

from parsy import (
    ParseError,
    Parser,
    alt,
    any_char,
    eof,
    regex,
    seq,
)
from parsy import (
    string as strp,
)

LIST_INVOCATION = "just --list"


class DataclassDictEncoder(json.JSONEncoder):
    def default(self, o: Any) -> Any:
        if dataclasses.is_dataclass(o):
            return dataclasses.asdict(o)
        return super().default(o)


class JmakeError(Exception):
    pass


class JustfileReadError(JmakeError):
    pass


class Variadic(str, Enum):
    NONE = ""
    ZERO_OR_MORE = "*"
    ONE_OR_MORE = "+"


@dataclass
class Param:
    name: str
    default: str = ""
    variadic: Variadic = Variadic.NONE

    @property
    def required(self) -> bool:
        return self.variadic is Variadic.NONE and not self.default

    def __str__(self) -> str:
        if self.variadic is not Variadic.NONE:
            return f"{self.variadic.value}{self.name}"
        if self.default:
            return f'{self.name}="{self.default}"'
        return self.name


@dataclass
class Variable:
    name: str
    value: str
    export: bool = False
    backtick: bool = False


@dataclass
class Alias:
    name: str
    target: str


@dataclass
class Recipe:
    name: str
    doc: str = ""
    params: List[Param] = dataclasses.field(default_factory=list)
    dependencies: List[str] = dataclasses.field(default_factory=list)
    lines: List[str] = dataclasses.field(default_factory=list)

    @property
    def silent(self) -> bool:
        return bool(self.lines) and all(line.startswith("@") for line in self.lines)


@dataclass
class Justfile:
    variables: List[Variable] = dataclasses.field(default_factory=list)
    recipes: List[Recipe] = dataclasses.field(default_factory=list)
    aliases: List[Alias] = dataclasses.field(default_factory=list)

    def resolve_alias(self, name: str) -> str:
        # Duplicate alias names resolve to the first one declared
        for alias in self.aliases:
            if alias.name == name:
                return alias.target
        return name

    def find_recipe(self, name: str) -> Optional[Recipe]:
        for recipe in self.recipes:
            if recipe.name == name:
                return recipe
        return None

    @property
    def has_list_default(self) -> bool:
        return bool(self.recipes) and is_list_default(self.recipes[0])


# Classifications produced by the line grammar, alongside Alias, Variable and Recipe
@dataclass
class Blank:
    pass


@dataclass
class SectionSeparator:
    pass


@dataclass
class Comment:
    text: str


@dataclass
class Unrecognized:
    text: str


LineItem = Union[
    Blank, SectionSeparator, Comment, Alias, Variable, Recipe, Unrecognized
]


def is_list_default(recipe: Recipe) -> bool:
    """
    A recipe whose only purpose is to run `just --list`. These are replaced by
    a generated help target instead of being translated literally.
    """
    if len(recipe.lines) != 1:
        return False
    return recipe.lines[0].strip().lstrip("@").strip() == LIST_INVOCATION


def unquote(s: str) -> str:
    if len(s) >= 2 and s[0] == s[-1] and s[0] in "\"'":
        return s[1:-1]
    return s


def debug(name: str) -> Callable[[Any], Any]:
    """
    Identity function with the side effect of logging which line parser
    matched. Only visible when the log level is DEBUG (--verbose).
    """

    def _debug(val: Any) -> Any:
        logging.debug("%s %r", name, val)
        return val

    return _debug


def make_variable(export: bool, name: str, raw_value: str) -> Variable:
    if len(raw_value) >= 2 and raw_value.startswith("`") and raw_value.endswith("`"):
        return Variable(name, raw_value[1:-1], export=export, backtick=True)
    return Variable(name, unquote(raw_value), export=export)


########################################################################################
# Line Grammar                                                                         #
########################################################################################

space = regex(r"[ \t]+")
rest = any_char.many().concat()


def surround(p: Parser) -> Callable[[Parser], Parser]:
    def result(p2: Parser) -> Parser:
        return p >> p2 << p

    return result


lex2 = surround(space.optional())

NAME = regex(r"[a-zA-Z_][a-zA-Z0-9_-]*")

# Parameter tokens, tried in order
VARIADIC_PARAM = seq(regex(r"[*+]").map(Variadic), NAME).combine(
    lambda variadic, name: Param(name, variadic=variadic)
)
DEFAULT_PARAM = seq(NAME << strp("="), any_char.at_least(1).concat()).combine(
    lambda name, default: Param(name, default=unquote(default))
)
REQUIRED_PARAM = any_char.at_least(1).concat().map(Param)

param = alt(*(p << eof for p in (VARIADIC_PARAM, DEFAULT_PARAM, REQUIRED_PARAM)))


def parse_params(tokens: Iterable[str]) -> List[Param]:
    params = [param.parse(token) for token in tokens]
    for p in params[:-1]:
        if p.variadic is not Variadic.NONE:
            logging.warning(
                f"Variadic parameter {p} is not the last parameter and will "
                "swallow every argument after it."
            )
    return params


def parse_dependencies(text: str) -> List[str]:
    return text.split()


def make_recipe(name: str, params_text: str, dependencies_text: str) -> Recipe:
    return Recipe(
        name,
        params=parse_params(params_text.split()),
        dependencies=parse_dependencies(dependencies_text),
    )


assignment_value = lex2(strp(":=")) >> any_char.at_least(1).concat().map(str.strip)

BLANK = eof.result(Blank()).map(debug("blank"))
SECTION_SEPARATOR = (
    regex(r"#\s*---.*---\s*").result(SectionSeparator()).map(debug("separator"))
)
COMMENT = (strp("#") >> rest.map(str.strip)).map(Comment).map(debug("comment"))
ALIAS = (
    seq(
        strp("alias") >> space >> NAME,
        lex2(strp(":=")) >> NAME,
    ).combine(Alias)
).map(debug("alias"))
ASSIGNMENT = (
    seq(strp("export") >> space >> NAME, assignment_value).combine(
        lambda name, value: make_variable(True, name, value)
    )
    | seq(NAME, assignment_value).combine(
        lambda name, value: make_variable(False, name, value)
    )
).map(debug("assignment"))
RECIPE_HEADER = (
    seq(
        NAME,
        regex(r"[ \t]+[^:]+").optional(""),
        strp(":") >> rest,
    ).combine(make_recipe)
).map(debug("recipe"))

# Order matters: separators are comments too, and assignments would otherwise be
# read as recipe headers
line_item = alt(
    *(
        p << eof
        for p in (BLANK, SECTION_SEPARATOR, COMMENT, ALIAS, ASSIGNMENT, RECIPE_HEADER)
    )
)

BODY_LINE = (strp("\t") | strp("    ")) >> rest


def classify(trimmed: str) -> LineItem:
    try:
        return line_item.parse(trimmed)
    except ParseError:
        return Unrecognized(trimmed)


########################################################################################
# Parser State Machine                                                                 #
########################################################################################


@dataclass
class ParserState:
    """
    Line-at-a-time parser. While `current` is set, indented lines are collected
    into its body. `pending_doc` holds the last comment seen, and is only
    attached to a recipe header on the very next line.
    """

    justfile: Justfile = dataclasses.field(default_factory=Justfile)
    current: Optional[Recipe] = None
    pending_doc: str = ""

    def feed(self, line: str) -> None:
        line = line.rstrip("\r\n")
        if self.current is not None:
            try:
                self.current.lines.append(BODY_LINE.parse(line))
                return
            except ParseError:
                self.close_recipe()
        self.handle(classify(line.strip()))

    def handle(self, item: LineItem) -> None:
        if isinstance(item, Comment):
            self.pending_doc = item.text
            return

        doc, self.pending_doc = self.pending_doc, ""
        if isinstance(item, Alias):
            self.justfile.aliases.append(item)
        elif isinstance(item, Variable):
            self.justfile.variables.append(item)
        elif isinstance(item, Recipe):
            item.doc = doc
            self.current = item
        elif isinstance(item, Unrecognized):
            logging.debug("Skipping unrecognized line %r", item.text)

    def close_recipe(self) -> None:
        if self.current is not None:
            self.justfile.recipes.append(self.current)
            self.current = None

    def finish(self) -> Justfile:
        self.close_recipe()
        return self.justfile


def parse(data: str) -> Justfile:
    state = ParserState()
    for line in data.split("\n"):
        state.feed(line)
    return state.finish()


def parse_stream(f: TextIO) -> Justfile:
    state = ParserState()
    try:
        for line in f:
            state.feed(line)
    except (OSError, UnicodeDecodeError) as e:
        raise JustfileReadError(f"reading justfile: {e}") from e
    return state.finish()


def run(f: TextIO) -> None:
    print(json.dumps(parse_stream(f), cls=DataclassDictEncoder, indent=2))


def main(justfile_path: Optional[str], verbose: bool = False) -> None:
    if verbose:
        logging.basicConfig(format="%(levelname)s: %(message)s", level=logging.DEBUG)
    if justfile_path is None or justfile_path == "-":
        run(sys.stdin)
    else:
        with open(justfile_path) as f:
            run(f)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Parse a justfile")
    parser.add_argument("-i", "--infile", action="store", help="Input justfile path")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Verbose parser output"
    )
    parsed_args = parser.parse_args()

    main(parsed_args.infile, verbose=parsed_args.verbose)

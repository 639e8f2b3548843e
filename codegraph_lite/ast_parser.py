"""Declaration extraction using Tree-sitter.

Parses source files and returns a closed set of declarations (functions,
classes, imports) that the code indexer turns into graph nodes. Each
declaration carries a ``kind`` so consumers dispatch explicitly instead of
probing attributes.

Supports: Python, JavaScript, TypeScript, TSX.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol, runtime_checkable

from codegraph_lite.log_config import get_logger, log_timing

log = get_logger("ast_parser")

# Language detection by file extension
LANGUAGE_MAP: dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "tsx",
}

LANGUAGE_LABELS: dict[str, str] = {
    "python": "Python",
    "javascript": "JavaScript",
    "typescript": "TypeScript",
    "tsx": "TypeScript",
}

_BRANCH_TYPES = {"if_statement", "for_statement", "for_in_statement", "while_statement"}
_RETURNS_OBJECT = re.compile(r"^(new\s+)?[A-Z]\w*\s*\(|^cls\s*\(")


class DeclarationKind(str, Enum):
    FUNCTION = "function"
    CLASS = "class"
    IMPORT = "import"


@dataclass
class FunctionDeclaration:
    """Function-like declaration.

    Attributes:
        name: Function name
        parameters: Parameter names in order
        signature: Source text from the start of the declaration to the body
        body: Body source text
        is_async: Declared async
        is_generator: Declared (or detected) generator
        line_start: 1-indexed first line
        line_end: 1-indexed last line
        return_type: Annotated return type, if any
        branch_count: if/for/while statements directly in the body
        calls: Names of functions called in the body
    """
    name: str
    parameters: list[str] = field(default_factory=list)
    signature: str = ""
    body: str = ""
    is_async: bool = False
    is_generator: bool = False
    line_start: int = 0
    line_end: int = 0
    return_type: str | None = None
    branch_count: int | None = None
    calls: list[str] = field(default_factory=list)
    kind: DeclarationKind = field(default=DeclarationKind.FUNCTION, init=False)


@dataclass
class ClassDeclaration:
    """Class declaration with member names and shape flags."""
    name: str
    superclass: str | None = None
    interfaces: list[str] = field(default_factory=list)
    methods: list[str] = field(default_factory=list)
    properties: list[str] = field(default_factory=list)
    abstract: bool = False
    line_start: int = 0
    line_end: int = 0
    has_private_constructor: bool = False
    has_static_instance: bool = False
    returns_objects: bool = False
    kind: DeclarationKind = field(default=DeclarationKind.CLASS, init=False)


@dataclass
class ImportDeclaration:
    """Import statement: module specifier and imported names."""
    module: str
    names: list[str] = field(default_factory=list)
    line: int = 0
    kind: DeclarationKind = field(default=DeclarationKind.IMPORT, init=False)


Declaration = FunctionDeclaration | ClassDeclaration | ImportDeclaration


@runtime_checkable
class SourceParser(Protocol):
    """Source parser: file content in, declarations out."""

    def supports(self, language: str) -> bool:
        ...

    def parse(self, content: str, language: str) -> list[Declaration]:
        ...


def detect_language(filepath: str | Path) -> str | None:
    """Detect parser language from file extension.

    Args:
        filepath: Path to the source file

    Returns:
        Language identifier or None if not parseable
    """
    return LANGUAGE_MAP.get(Path(filepath).suffix.lower())


def language_label(filepath: str | Path) -> str:
    """Display name of a file's language ("Unknown" if not parseable)."""
    language = detect_language(filepath)
    if language:
        return LANGUAGE_LABELS[language]
    suffix = Path(filepath).suffix.lower().lstrip(".")
    return {"json": "JSON", "md": "Markdown"}.get(suffix, "Unknown")


def _text(node) -> str:
    return node.text.decode("utf8") if node is not None else ""


def _line_range(node) -> tuple[int, int]:
    return node.start_point[0] + 1, node.end_point[0] + 1


def _has_child(node, child_type: str) -> bool:
    return any(c.type == child_type for c in node.children)


def _find_all(node, types: set[str], stop: set[str] = frozenset()):
    """Descendants of the given types, not descending into ``stop`` types."""
    stack = list(node.children)
    while stack:
        current = stack.pop()
        if current.type in types:
            yield current
        if current.type not in stop:
            stack.extend(current.children)


def _first_identifier(node) -> str:
    if node.type in ("identifier", "property_identifier"):
        return _text(node)
    for child in node.named_children:
        found = _first_identifier(child)
        if found:
            return found
    return ""


class TreeSitterParser:
    """SourceParser backed by tree-sitter grammars.

    Grammars come from tree-sitter-language-pack and are loaded lazily,
    once per language.
    """

    SUPPORTED = frozenset(LANGUAGE_LABELS)

    def __init__(self):
        self._parsers: dict[str, object] = {}

    def supports(self, language: str) -> bool:
        return language in self.SUPPORTED

    def _get_parser(self, language: str):
        if language not in self._parsers:
            from tree_sitter_language_pack import get_parser

            log.debug(f"Loading tree-sitter grammar: {language}")
            self._parsers[language] = get_parser(language)
        return self._parsers[language]

    def parse(self, content: str, language: str) -> list[Declaration]:
        """Parse content and return its declarations.

        Raises:
            ValueError: If the language is not supported
        """
        if not self.supports(language):
            raise ValueError(f"Unsupported language: {language}")

        source = bytes(content, "utf8")
        with log_timing(f"Tree-sitter parsing ({language})", log):
            tree = self._get_parser(language).parse(source)

        declarations: list[Declaration] = []
        if language == "python":
            self._walk_python(tree.root_node, source, declarations)
        else:
            self._walk_js(tree.root_node, source, declarations)

        log.trace(f"Extracted {len(declarations)} declarations ({language})")
        return declarations

    # =========================================================================
    # Python
    # =========================================================================

    def _walk_python(self, node, source: bytes, out: list[Declaration]) -> None:
        for child in node.children:
            target = child
            if child.type == "decorated_definition":
                target = child.child_by_field_name("definition") or child
            if target.type == "function_definition":
                out.append(self._python_function(target, source))
                body = target.child_by_field_name("body")
                if body is not None:
                    self._walk_python(body, source, out)
            elif target.type == "class_definition":
                out.append(self._python_class(target))
            elif target.type in ("import_statement", "import_from_statement"):
                out.append(self._python_import(target))
            else:
                self._walk_python(child, source, out)

    @staticmethod
    def _python_param(node) -> str:
        prefix = {"list_splat_pattern": "*", "dictionary_splat_pattern": "**"}.get(node.type, "")
        if node.type == "identifier":
            return _text(node)
        name = node.child_by_field_name("name")
        if name is not None:
            return prefix + _text(name)
        return prefix + _first_identifier(node) if _first_identifier(node) else "param"

    def _python_function(self, node, source: bytes) -> FunctionDeclaration:
        body = node.child_by_field_name("body")
        params = node.child_by_field_name("parameters")
        line_start, line_end = _line_range(node)
        stop = {"function_definition", "lambda", "class_definition"}
        return FunctionDeclaration(
            name=_text(node.child_by_field_name("name")),
            parameters=[self._python_param(p) for p in params.named_children] if params else [],
            signature=source[node.start_byte:body.start_byte].decode("utf8").strip() if body else _text(node),
            body=_text(body),
            is_async=_has_child(node, "async"),
            is_generator=body is not None and any(True for _ in _find_all(body, {"yield"}, stop)),
            line_start=line_start,
            line_end=line_end,
            return_type=_text(node.child_by_field_name("return_type")) or None,
            branch_count=sum(1 for c in body.named_children if c.type in _BRANCH_TYPES) if body else 0,
            calls=self._python_calls(body) if body else [],
        )

    @staticmethod
    def _python_calls(body) -> list[str]:
        names = []
        for call in _find_all(body, {"call"}, {"function_definition", "class_definition"}):
            fn = call.child_by_field_name("function")
            if fn is None:
                continue
            if fn.type == "attribute":
                fn = fn.child_by_field_name("attribute")
            name = _text(fn)
            if name and name not in names:
                names.append(name)
        return names

    def _python_class(self, node) -> ClassDeclaration:
        line_start, line_end = _line_range(node)
        decl = ClassDeclaration(name=_text(node.child_by_field_name("name")), line_start=line_start, line_end=line_end)

        bases = []
        superclasses = node.child_by_field_name("superclasses")
        for base in superclasses.named_children if superclasses else []:
            if base.type == "keyword_argument":
                if "ABCMeta" in _text(base):
                    decl.abstract = True
                continue
            bases.append(_text(base))
        bases = [b for b in bases if b != "object"]
        if bases:
            decl.superclass = bases[0]
            decl.interfaces = bases[1:]
        if any(b.split(".")[-1] in ("ABC", "Protocol") for b in bases):
            decl.abstract = True

        body = node.child_by_field_name("body")
        for member in body.named_children if body else []:
            target = member
            decorators = ""
            if member.type == "decorated_definition":
                decorators = " ".join(_text(d) for d in member.named_children if d.type == "decorator")
                target = member.child_by_field_name("definition") or member
            if target.type == "function_definition":
                self._python_method(decl, target, decorators)
            elif member.type == "expression_statement":
                for assignment in member.named_children:
                    if assignment.type != "assignment":
                        continue
                    left = assignment.child_by_field_name("left")
                    if left is not None and left.type == "identifier":
                        name = _text(left)
                        decl.properties.append(name)
                        # Class attributes are shared by all instances
                        if "instance" in name.lower():
                            decl.has_static_instance = True
        return decl

    def _python_method(self, decl: ClassDeclaration, node, decorators: str) -> None:
        name = _text(node.child_by_field_name("name"))
        decl.methods.append(name)
        body = node.child_by_field_name("body")
        if "abstractmethod" in decorators:
            decl.abstract = True
        if body is None:
            return
        if name == "__new__" or (name == "__init__" and any(True for _ in _find_all(body, {"raise_statement"}))):
            decl.has_private_constructor = True
        if name == "__init__":
            for assignment in _find_all(body, {"assignment"}, {"function_definition"}):
                left = assignment.child_by_field_name("left")
                if left is not None and left.type == "attribute" and _text(left.child_by_field_name("object")) == "self":
                    attr = _text(left.child_by_field_name("attribute"))
                    if attr and attr not in decl.properties:
                        decl.properties.append(attr)
        for ret in _find_all(body, {"return_statement"}, {"function_definition"}):
            value = ret.named_children[0] if ret.named_children else None
            if value is not None and _RETURNS_OBJECT.match(_text(value)):
                decl.returns_objects = True

    @staticmethod
    def _python_import(node) -> ImportDeclaration:
        line = node.start_point[0] + 1
        if node.type == "import_from_statement":
            module = _text(node.child_by_field_name("module_name"))
            names = [
                _text(n) for n in node.named_children
                if n.type in ("dotted_name", "aliased_import") and n != node.child_by_field_name("module_name")
            ]
            return ImportDeclaration(module=module, names=names, line=line)
        names = [_text(n) for n in node.named_children]
        return ImportDeclaration(module=names[0] if names else "", names=names, line=line)

    # =========================================================================
    # JavaScript / TypeScript
    # =========================================================================

    def _walk_js(self, node, source: bytes, out: list[Declaration]) -> None:
        for child in node.children:
            ctype = child.type
            if ctype in ("function_declaration", "generator_function_declaration"):
                out.append(self._js_function(child, _text(child.child_by_field_name("name")), child, source))
                self._walk_js(child.child_by_field_name("body") or child, source, out)
            elif ctype in ("lexical_declaration", "variable_declaration"):
                for declarator in child.named_children:
                    value = declarator.child_by_field_name("value") if declarator.type == "variable_declarator" else None
                    if value is not None and value.type in (
                        "arrow_function", "function_expression", "function", "generator_function",
                    ):
                        name = _text(declarator.child_by_field_name("name"))
                        out.append(self._js_function(value, name, child, source))
                        self._walk_js(value, source, out)
                    else:
                        self._walk_js(declarator, source, out)
            elif ctype in ("class_declaration", "abstract_class_declaration"):
                out.append(self._js_class(child))
            elif ctype == "import_statement":
                out.append(self._js_import(child))
            else:
                self._walk_js(child, source, out)

    @staticmethod
    def _js_param(node) -> str:
        if node.type == "identifier":
            return _text(node)
        if node.type in ("required_parameter", "optional_parameter"):
            pattern = node.child_by_field_name("pattern")
            return _text(pattern) if pattern is not None and pattern.type == "identifier" else "param"
        if node.type == "assignment_pattern":
            left = node.child_by_field_name("left")
            return _text(left) if left is not None and left.type == "identifier" else "param"
        if node.type == "rest_pattern":
            return "..." + (_first_identifier(node) or "args")
        return "param"

    def _js_function(self, node, name: str, outer, source: bytes) -> FunctionDeclaration:
        body = node.child_by_field_name("body")
        params = node.child_by_field_name("parameters")
        single = node.child_by_field_name("parameter")
        if params is not None:
            parameters = [self._js_param(p) for p in params.named_children if p.type != "comment"]
        elif single is not None:
            parameters = [_text(single)]
        else:
            parameters = []

        line_start, line_end = _line_range(outer)
        return_type = _text(node.child_by_field_name("return_type")).lstrip(":").strip() or None
        branch_count = 0
        if body is not None and body.type == "statement_block":
            branch_count = sum(1 for c in body.named_children if c.type in _BRANCH_TYPES)

        return FunctionDeclaration(
            name=name,
            parameters=parameters,
            signature=source[outer.start_byte:body.start_byte].decode("utf8").strip() if body else _text(outer),
            body=_text(body),
            is_async=_has_child(node, "async"),
            is_generator="generator" in node.type or _has_child(node, "*"),
            line_start=line_start,
            line_end=line_end,
            return_type=return_type,
            branch_count=branch_count,
            calls=self._js_calls(body) if body else [],
        )

    @staticmethod
    def _js_calls(body) -> list[str]:
        names = []
        for call in _find_all(body, {"call_expression"}, {"function_declaration", "class_declaration"}):
            fn = call.child_by_field_name("function")
            if fn is None:
                continue
            if fn.type == "member_expression":
                fn = fn.child_by_field_name("property")
            name = _text(fn)
            if name and name not in names:
                names.append(name)
        return names

    def _js_class(self, node) -> ClassDeclaration:
        line_start, line_end = _line_range(node)
        decl = ClassDeclaration(
            name=_text(node.child_by_field_name("name")),
            abstract=node.type == "abstract_class_declaration",
            line_start=line_start,
            line_end=line_end,
        )

        for child in node.children:
            if child.type != "class_heritage":
                continue
            for clause in child.named_children:
                if clause.type == "extends_clause":
                    value = clause.child_by_field_name("value") or (clause.named_children[0] if clause.named_children else None)
                    decl.superclass = _text(value) or None
                elif clause.type == "implements_clause":
                    decl.interfaces = [_text(t) for t in clause.named_children]
                elif decl.superclass is None:
                    decl.superclass = _text(clause)

        body = node.child_by_field_name("body")
        for member in body.named_children if body else []:
            if member.type in ("method_definition", "method_signature", "abstract_method_signature"):
                self._js_method(decl, member)
            elif member.type in ("field_definition", "public_field_definition"):
                name_node = member.child_by_field_name("property") or member.child_by_field_name("name")
                name = _text(name_node)
                if not name:
                    continue
                decl.properties.append(name)
                if _has_child(member, "static") and "instance" in name.lower():
                    decl.has_static_instance = True
        return decl

    def _js_method(self, decl: ClassDeclaration, member) -> None:
        name = _text(member.child_by_field_name("name"))
        if not name:
            return
        decl.methods.append(name)
        if member.type == "abstract_method_signature":
            decl.abstract = True
        modifiers = " ".join(_text(c) for c in member.children if c.type == "accessibility_modifier")
        if name == "constructor" and "private" in modifiers:
            decl.has_private_constructor = True
        body = member.child_by_field_name("body")
        if body is None:
            return
        for ret in _find_all(body, {"return_statement"}, {"function_declaration", "class_declaration"}):
            value = ret.named_children[0] if ret.named_children else None
            if value is not None and (value.type == "new_expression" or _RETURNS_OBJECT.match(_text(value))):
                decl.returns_objects = True

    @staticmethod
    def _js_import(node) -> ImportDeclaration:
        source_node = node.child_by_field_name("source")
        module = _text(source_node).strip("'\"`")
        names = []
        for clause in node.named_children:
            if clause.type == "import_clause":
                names.extend(
                    _text(n) for n in _find_all(clause, {"identifier"})
                )
        return ImportDeclaration(module=module, names=names, line=node.start_point[0] + 1)


__all__ = [
    "DeclarationKind",
    "FunctionDeclaration",
    "ClassDeclaration",
    "ImportDeclaration",
    "Declaration",
    "SourceParser",
    "TreeSitterParser",
    "LANGUAGE_MAP",
    "detect_language",
    "language_label",
]

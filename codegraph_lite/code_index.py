"""Code indexing for CodeGraph Lite.

Walks a project tree and writes File, Function and Class nodes with
CONTAINS edges into the graph store, one transaction per batch of files.
A linking pass afterwards resolves EXTENDS/IMPLEMENTS/CALLS/IMPORTS edges
between the indexed symbols.
"""

import hashlib
import os
import re
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import pathspec

from codegraph_lite.ast_parser import (
    ClassDeclaration,
    DeclarationKind,
    FunctionDeclaration,
    ImportDeclaration,
    SourceParser,
    TreeSitterParser,
    detect_language,
    language_label,
)
from codegraph_lite.config import Config
from codegraph_lite.db.graph_protocol import BaseGraphStore
from codegraph_lite.log_config import get_logger, log_timing
from codegraph_lite.schema import (
    BaseNode,
    ClassNode,
    FileNode,
    FunctionNode,
    NodeType,
    Relationship,
    RelationType,
)

log = get_logger("code_index")

_BRANCH_KEYWORDS = re.compile(r"\b(if|for|while)\b")
_CALL_CANDIDATE = re.compile(r"\b([A-Za-z_$][\w$]*)\s*\(")
_NOT_CALLS = {"if", "for", "while", "switch", "catch", "return", "function", "def", "class", "new", "typeof"}

# Symbol lookups when re-indexing a single file
_SYMBOL_SCAN_LIMIT = 100000

# Edges from other files that are restored after a single-file re-index
_INBOUND_LINKS = [RelationType.CALLS, RelationType.IMPORTS, RelationType.EXTENDS, RelationType.IMPLEMENTS]


@dataclass
class IndexingResult:
    """Outcome of an indexing run.

    ``errors`` is always present; an empty list means total success.
    """
    files_indexed: int = 0
    functions_found: int = 0
    classes_found: int = 0
    relationships_created: int = 0
    errors: list[str] = field(default_factory=list)
    duration: float = 0.0
    timed_out: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _SymbolTable:
    """Names and declarations collected for the linking pass."""
    files: dict[str, str] = field(default_factory=dict)
    classes: dict[str, str] = field(default_factory=dict)
    functions: dict[str, str] = field(default_factory=dict)
    class_decls: list[tuple[str, ClassDeclaration]] = field(default_factory=list)
    function_decls: list[tuple[str, FunctionDeclaration]] = field(default_factory=list)
    imports: list[tuple[str, str, ImportDeclaration]] = field(default_factory=list)


@dataclass
class _ParsedFile:
    file_node: FileNode
    nodes: list[BaseNode]
    relationships: list[Relationship]
    symbols: _SymbolTable


def estimate_complexity(decl: FunctionDeclaration) -> int:
    """Branch-count complexity: 1 plus each if/for/while in the body.

    Uses the parser's statement count when available, otherwise counts
    branch keywords in the body text.
    """
    if decl.branch_count is not None:
        return 1 + decl.branch_count
    return 1 + len(_BRANCH_KEYWORDS.findall(decl.body))


class CodeIndexer:
    """Indexes a project tree into the knowledge graph.

    Example:
        indexer = CodeIndexer(store, "/path/to/project", config)
        result = indexer.index_project()
        print(result.files_indexed, result.errors)
    """

    def __init__(
        self,
        store: BaseGraphStore,
        project_path: str | Path,
        config: Config | None = None,
        parser: SourceParser | None = None,
    ):
        """Initialize the code indexer.

        Args:
            store: Graph store to write into
            project_path: Project root directory
            config: Indexing settings (batch size, extensions, ignore patterns)
            parser: Declaration parser (default: TreeSitterParser)
        """
        self.store = store
        self.project_path = Path(project_path).resolve()
        self.config = config or Config()
        self.parser = parser or TreeSitterParser()
        self._extensions = {ext.lower() for ext in self.config.extensions}
        self._spec = self._build_pathspec()
        log.info(f"CodeIndexer initialized for {self.project_path}")

    # =========================================================================
    # File discovery
    # =========================================================================

    def _load_gitignore(self) -> list[str]:
        gitignore_path = self.project_path / ".gitignore"
        if not gitignore_path.exists():
            return []
        try:
            lines = gitignore_path.read_text(encoding="utf-8", errors="ignore").splitlines()
            log.debug(f"Loaded {len(lines)} lines from {gitignore_path}")
            return lines
        except OSError as e:
            log.warning(f"Failed to read .gitignore: {e}")
            return []

    def _build_pathspec(self) -> pathspec.PathSpec:
        """Combine configured ignore patterns with the project .gitignore."""
        patterns = []
        for line in [*self.config.ignore_paths, *self._load_gitignore()]:
            line = line.strip()
            if line and not line.startswith("#"):
                patterns.append(line)
        log.debug(f"Built pathspec with {len(patterns)} patterns")
        return pathspec.PathSpec.from_lines("gitwildmatch", patterns)

    def _should_exclude(self, rel_path: str, is_dir: bool = False) -> bool:
        return self._spec.match_file(f"{rel_path}/" if is_dir else rel_path)

    def discover_files(self) -> list[Path]:
        """Enumerate indexable files, pruning ignored subtrees.

        Returns:
            Sorted absolute paths with an allowed extension
        """
        files: list[Path] = []
        for dirpath, dirnames, filenames in os.walk(self.project_path):
            current = Path(dirpath)
            rel_dir = current.relative_to(self.project_path).as_posix()
            prefix = "" if rel_dir == "." else f"{rel_dir}/"

            # Prune in place so os.walk never descends into ignored trees
            dirnames[:] = sorted(d for d in dirnames if not self._should_exclude(prefix + d, is_dir=True))

            for filename in sorted(filenames):
                if Path(filename).suffix.lower() not in self._extensions:
                    continue
                if self._should_exclude(prefix + filename):
                    log.trace(f"Excluding (pattern match): {prefix + filename}")
                    continue
                files.append(current / filename)

        log.info(f"Found {len(files)} files to index")
        return files

    def _relative(self, path: str | Path) -> str:
        path = Path(path)
        if not path.is_absolute():
            path = self.project_path / path
        return path.resolve().relative_to(self.project_path).as_posix()

    # =========================================================================
    # Indexing
    # =========================================================================

    def index_project(self, timeout: float | None = None) -> IndexingResult:
        """Index every file of the project.

        Files are processed in batches of ``config.batch_size``; each batch
        is written in one transaction. Read and parse failures are recorded
        in ``errors`` and do not stop the run.

        Args:
            timeout: Optional wall-clock limit in seconds, checked between batches

        Returns:
            IndexingResult with counts, errors and duration
        """
        start = time.perf_counter()
        deadline = start + timeout if timeout else None
        result = IndexingResult()
        symbols = _SymbolTable()

        files = self.discover_files()
        batch_size = self.config.batch_size
        for offset in range(0, len(files), batch_size):
            if deadline is not None and time.perf_counter() > deadline:
                result.timed_out = True
                result.errors.append(
                    f"Indexing timed out after {timeout}s ({offset}/{len(files)} files processed)"
                )
                log.warning(f"Indexing timed out after {offset}/{len(files)} files")
                break
            batch = files[offset:offset + batch_size]
            with log_timing(f"Indexing batch {offset // batch_size + 1} ({len(batch)} files)", log):
                self._index_batch(batch, result, symbols)

        result.relationships_created += self._link_symbols(symbols, result)
        result.duration = time.perf_counter() - start

        log.info(
            f"Indexing complete: {result.files_indexed} files, {result.functions_found} functions, "
            f"{result.classes_found} classes, {result.relationships_created} relationships, "
            f"{len(result.errors)} errors in {result.duration:.2f}s"
        )
        return result

    def _index_batch(self, batch: list[Path], result: IndexingResult, symbols: _SymbolTable) -> None:
        nodes: list[BaseNode] = []
        relationships: list[Relationship] = []
        parsed_files: list[_ParsedFile] = []

        for path in batch:
            try:
                parsed = self._parse_file(path)
            except Exception as e:
                rel_path = self._relative(path)
                log.warning(f"Failed to index {rel_path}: {e}")
                result.errors.append(f"{rel_path}: {e}")
                continue
            parsed_files.append(parsed)
            nodes.extend(parsed.nodes)
            relationships.extend(parsed.relationships)

        if not parsed_files:
            return

        try:
            self.store.create_subgraph(nodes, relationships)
        except Exception as e:
            first, last = parsed_files[0].file_node.path, parsed_files[-1].file_node.path
            log.error(f"Batch write failed ({first} .. {last}): {e}")
            result.errors.append(f"{first}: batch write failed ({len(parsed_files)} files): {e}")
            return

        for parsed in parsed_files:
            result.files_indexed += 1
            result.functions_found += len(parsed.symbols.function_decls)
            result.classes_found += len(parsed.symbols.class_decls)
            result.relationships_created += len(parsed.relationships)
            self._merge_symbols(symbols, parsed.symbols)

    @staticmethod
    def _merge_symbols(target: _SymbolTable, source: _SymbolTable) -> None:
        target.files.update(source.files)
        for name, node_id in source.classes.items():
            target.classes.setdefault(name, node_id)
        for name, node_id in source.functions.items():
            target.functions.setdefault(name, node_id)
        target.class_decls.extend(source.class_decls)
        target.function_decls.extend(source.function_decls)
        target.imports.extend(source.imports)

    def _parse_file(self, path: Path) -> _ParsedFile:
        """Read one file and build its nodes and CONTAINS edges."""
        rel_path = self._relative(path)
        raw = path.read_bytes()
        content = raw.decode("utf-8")
        stat = path.stat()

        file_node = FileNode(
            name=path.name,
            path=rel_path,
            content=content[:self.config.max_file_content],
            hash=hashlib.sha256(raw).hexdigest(),
            language=language_label(path),
            size=stat.st_size,
            lines=len(content.splitlines()),
            last_modified=stat.st_mtime,
        )
        parsed = _ParsedFile(file_node=file_node, nodes=[file_node], relationships=[], symbols=_SymbolTable())
        parsed.symbols.files[rel_path] = file_node.id

        language = detect_language(path)
        if not language or not self.parser.supports(language):
            return parsed

        for decl in self.parser.parse(content, language):
            if decl.kind == DeclarationKind.FUNCTION:
                node = self._function_node(decl, rel_path)
                parsed.symbols.functions.setdefault(decl.name, node.id)
                parsed.symbols.function_decls.append((node.id, decl))
            elif decl.kind == DeclarationKind.CLASS:
                node = self._class_node(decl, rel_path)
                parsed.symbols.classes.setdefault(decl.name, node.id)
                parsed.symbols.class_decls.append((node.id, decl))
            elif decl.kind == DeclarationKind.IMPORT:
                parsed.symbols.imports.append((file_node.id, rel_path, decl))
                continue
            else:
                raise ValueError(f"Unknown declaration kind: {decl.kind}")
            parsed.nodes.append(node)
            parsed.relationships.append(Relationship(file_node.id, node.id, RelationType.CONTAINS))

        log.trace(
            f"Parsed {rel_path}: {len(parsed.symbols.function_decls)} functions, "
            f"{len(parsed.symbols.class_decls)} classes"
        )
        return parsed

    @staticmethod
    def _function_node(decl: FunctionDeclaration, rel_path: str) -> FunctionNode:
        return FunctionNode(
            name=decl.name,
            signature=decl.signature,
            body=decl.body,
            parameters=list(decl.parameters),
            return_type=decl.return_type,
            is_async=decl.is_async,
            is_generator=decl.is_generator,
            complexity=estimate_complexity(decl),
            line_start=decl.line_start,
            line_end=decl.line_end,
            file_path=rel_path,
        )

    @staticmethod
    def _class_node(decl: ClassDeclaration, rel_path: str) -> ClassNode:
        return ClassNode(
            name=decl.name,
            extends=decl.superclass,
            implements=list(decl.interfaces),
            abstract=decl.abstract,
            methods=list(decl.methods),
            properties=list(decl.properties),
            line_start=decl.line_start,
            line_end=decl.line_end,
            file_path=rel_path,
            has_private_constructor=decl.has_private_constructor,
            has_static_instance=decl.has_static_instance,
            returns_objects=decl.returns_objects,
        )

    # =========================================================================
    # Symbol linking
    # =========================================================================

    @staticmethod
    def _symbol_name(reference: str) -> str:
        """Bare class name from a reference like ``pkg.Base[T]`` or ``Base<T>``."""
        return re.split(r"[<\[(]", reference, maxsplit=1)[0].strip().split(".")[-1]

    def _resolve_import(self, rel_path: str, module: str, files: dict[str, str]) -> str | None:
        """Map an import specifier to an indexed file path, if it is one."""
        base_dir = Path(rel_path).parent
        candidates: list[str] = []
        if module.startswith("."):
            if "/" in module:
                target = os.path.normpath((base_dir / module).as_posix())
            else:
                # Python relative import: one leading dot per package level
                stripped = module.lstrip(".")
                parent = base_dir
                for _ in range(len(module) - len(stripped) - 1):
                    parent = parent.parent
                target = (parent / stripped.replace(".", "/")).as_posix() if stripped else parent.as_posix()
            candidates.append(target)
        elif "/" not in module:
            candidates.append(module.replace(".", "/"))
        else:
            return None

        for target in candidates:
            if target in files:
                return target
            for ext in self._extensions:
                for option in (f"{target}{ext}", f"{target}/index{ext}", f"{target}/__init__{ext}"):
                    if option in files:
                        return option
        return None

    def _link_symbols(self, symbols: _SymbolTable, result: IndexingResult) -> int:
        """Create EXTENDS, IMPLEMENTS, CALLS and IMPORTS edges.

        Returns:
            Number of relationships created
        """
        rels: dict[tuple[str, str, RelationType], Relationship] = {}

        def add(from_id: str, to_id: str | None, rel_type: RelationType) -> None:
            if to_id and to_id != from_id:
                rels.setdefault((from_id, to_id, rel_type), Relationship(from_id, to_id, rel_type))

        for class_id, decl in symbols.class_decls:
            if decl.superclass:
                add(class_id, symbols.classes.get(self._symbol_name(decl.superclass)), RelationType.EXTENDS)
            for interface in decl.interfaces:
                add(class_id, symbols.classes.get(self._symbol_name(interface)), RelationType.IMPLEMENTS)

        for function_id, decl in symbols.function_decls:
            callees = decl.calls or [
                name for name in _CALL_CANDIDATE.findall(decl.body) if name not in _NOT_CALLS
            ]
            for callee in callees:
                add(function_id, symbols.functions.get(callee), RelationType.CALLS)

        for file_id, rel_path, decl in symbols.imports:
            target = self._resolve_import(rel_path, decl.module, symbols.files)
            if target:
                add(file_id, symbols.files[target], RelationType.IMPORTS)

        if not rels:
            return 0

        batch = list(rels.values())
        try:
            with log_timing(f"Linking {len(batch)} symbol relationships", log):
                self.store.create_relationships(batch)
        except Exception as e:
            log.error(f"Symbol linking failed: {e}")
            result.errors.append(f"{self.project_path.name}: symbol linking failed: {e}")
            return 0
        return len(batch)

    def _seed_symbols(self, symbols: _SymbolTable) -> None:
        """Load already indexed names so a single file links against the graph."""
        for node in self.store.find_nodes_by_type(NodeType.FILE, limit=_SYMBOL_SCAN_LIMIT):
            symbols.files.setdefault(getattr(node, "path", node.name), node.id)
        for node in self.store.find_nodes_by_type(NodeType.CLASS, limit=_SYMBOL_SCAN_LIMIT):
            symbols.classes.setdefault(node.name, node.id)
        for node in self.store.find_nodes_by_type(NodeType.FUNCTION, limit=_SYMBOL_SCAN_LIMIT):
            symbols.functions.setdefault(node.name, node.id)

    def _collect_inbound(
        self, file_node: BaseNode, children: list[BaseNode]
    ) -> list[tuple[NodeType, str, Relationship]]:
        """Edges pointing into a file's nodes from outside it, keyed by target type and name."""
        replaced = {file_node.id: (NodeType.FILE, getattr(file_node, "path", file_node.name))}
        replaced.update({node.id: (node.type, node.name) for node in children})

        inbound = []
        for node_id, (node_type, key) in replaced.items():
            for source, rel in self.store.neighbors(
                node_id, _INBOUND_LINKS, direction="incoming", limit=_SYMBOL_SCAN_LIMIT
            ):
                if source.id not in replaced:
                    inbound.append((node_type, key, rel))
        return inbound

    def _restore_inbound(
        self,
        inbound: list[tuple[NodeType, str, Relationship]],
        symbols: _SymbolTable,
        result: IndexingResult,
    ) -> int:
        """Reattach collected inbound edges to the re-indexed nodes."""
        lookup = {
            NodeType.FILE: symbols.files,
            NodeType.CLASS: symbols.classes,
            NodeType.FUNCTION: symbols.functions,
        }
        rels = []
        for node_type, key, rel in inbound:
            target = lookup.get(node_type, {}).get(key)
            if target is None:
                log.debug(f"Dropped {rel.type.value} edge from {rel.from_id}: {key} no longer declared")
                continue
            rels.append(Relationship(rel.from_id, target, rel.type, properties=dict(rel.properties)))

        if not rels:
            return 0
        try:
            self.store.create_relationships(rels)
        except Exception as e:
            log.error(f"Restoring inbound edges failed: {e}")
            result.errors.append(f"{self.project_path.name}: restoring inbound edges failed: {e}")
            return 0
        log.debug(f"Restored {len(rels)} inbound edges")
        return len(rels)

    def update_file(self, file_path: str | Path) -> IndexingResult:
        """Re-index a single file.

        Deletes the existing File node and the Function/Class nodes it
        CONTAINS in one transaction, then indexes the file again. A file
        that no longer exists on disk is only removed from the graph.
        CALLS/IMPORTS/EXTENDS/IMPLEMENTS edges from other files are
        reattached to the new nodes by path or symbol name; edges whose
        target no longer exists are dropped.

        Args:
            file_path: Absolute or project-relative path

        Returns:
            IndexingResult for the single file
        """
        start = time.perf_counter()
        rel_path = self._relative(file_path)
        result = IndexingResult()

        inbound: list[tuple[NodeType, str, Relationship]] = []
        existing = self.store.find_nodes_by_property(NodeType.FILE, "path", rel_path, limit=1)
        if existing:
            file_id = existing[0].id
            children = self.store.neighbors(
                file_id,
                [RelationType.CONTAINS],
                direction="outgoing",
                node_types=[NodeType.FUNCTION, NodeType.CLASS],
                limit=_SYMBOL_SCAN_LIMIT,
            )
            inbound = self._collect_inbound(existing[0], [node for node, _ in children])
            removed = self.store.delete_nodes([file_id, *(node.id for node, _ in children)])
            log.debug(f"Removed {removed} nodes for {rel_path}")

        path = self.project_path / rel_path
        if not path.exists():
            log.info(f"File no longer exists, removed from graph: {rel_path}")
            result.duration = time.perf_counter() - start
            return result

        symbols = _SymbolTable()
        self._seed_symbols(symbols)
        batch_symbols = _SymbolTable()
        self._index_batch([path], result, batch_symbols)

        # Link only the new declarations, resolving against the whole graph
        linking = _SymbolTable(
            files={**symbols.files, **batch_symbols.files},
            classes={**symbols.classes, **batch_symbols.classes},
            functions={**symbols.functions, **batch_symbols.functions},
            class_decls=batch_symbols.class_decls,
            function_decls=batch_symbols.function_decls,
            imports=batch_symbols.imports,
        )
        result.relationships_created += self._link_symbols(linking, result)
        result.relationships_created += self._restore_inbound(inbound, batch_symbols, result)
        result.duration = time.perf_counter() - start
        log.info(f"Re-indexed {rel_path}: {result.functions_found} functions, {result.classes_found} classes")
        return result


__all__ = ["CodeIndexer", "IndexingResult", "estimate_complexity"]

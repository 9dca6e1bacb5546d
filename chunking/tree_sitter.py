"""Tree-sitter based chunk producer for Python, JavaScript and TypeScript."""

import logging
from abc import ABC, abstractmethod
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import tree_sitter_javascript as tsjavascript
import tree_sitter_python as tspython
import tree_sitter_typescript as tstypescript
from tree_sitter import Language, Parser

from .models import Chunk

logger = logging.getLogger(__name__)

PARSER_TAG = 'tree_sitter'

LANGUAGES: Dict[str, Callable[[], Any]] = {
    'python': tspython.language,
    'javascript': tsjavascript.language,
    'typescript': tstypescript.language_typescript,
    'tsx': tstypescript.language_tsx,
}


class LanguageChunker(ABC):
    """Abstract base class for language-specific chunkers."""

    # Node types whose children are traversed after the node itself is chunked
    container_node_types: Set[str] = {'class_definition', 'class_declaration'}

    def __init__(self, grammar: str, language_tag: str):
        """Initialize language chunker.

        Args:
            grammar: Key into LANGUAGES
            language_tag: Language tag written on produced chunks
        """
        self.grammar = grammar
        self.language_tag = language_tag
        self.parser = Parser(Language(LANGUAGES[grammar]()))
        self.splittable_node_types = self._get_splittable_node_types()

    @abstractmethod
    def _get_splittable_node_types(self) -> Set[str]:
        """Get node types that should be split into chunks."""

    def extract_metadata(self, node: Any, source: bytes) -> Dict[str, Any]:
        """Extract metadata (at least the declared name) from a node."""
        metadata: Dict[str, Any] = {'node_type': node.type}
        for child in node.children:
            if child.type in ('identifier', 'type_identifier', 'property_identifier'):
                metadata['name'] = self.get_node_text(child, source)
                break
        return metadata

    def get_node_text(self, node: Any, source: bytes) -> str:
        return source[node.start_byte:node.end_byte].decode('utf-8', errors='replace')

    def get_line_numbers(self, node: Any) -> Tuple[int, int]:
        """Get 1-based start and end line numbers for a node."""
        return node.start_point[0] + 1, node.end_point[0] + 1

    def chunk_code(self, source_code: str, file_path: str) -> List[Chunk]:
        """Chunk source code into semantic units.

        Args:
            source_code: Source code string
            file_path: Workspace-relative path written on the chunks

        Returns:
            Chunks in source order; a single module chunk when no splittable
            node was found
        """
        source_bytes = source_code.encode('utf-8')
        tree = self.parser.parse(source_bytes)
        chunks: List[Chunk] = []

        def traverse(node: Any, parent_name: Optional[str] = None) -> None:
            if node.type in self.splittable_node_types:
                start_line, end_line = self.get_line_numbers(node)
                metadata = self.extract_metadata(node, source_bytes)
                if parent_name:
                    metadata['parent_name'] = parent_name
                chunks.append(Chunk.create(
                    file_path=file_path,
                    start_line=start_line,
                    end_line=end_line,
                    content=self.get_node_text(node, source_bytes),
                    parser=PARSER_TAG,
                    chunk_type=node.type,
                    name=metadata.get('name'),
                    language=self.language_tag,
                    metadata=metadata,
                ))
                # Methods are chunked again inside their class
                if node.type in self.container_node_types:
                    for child in node.children:
                        traverse(child, metadata.get('name'))
                return

            for child in node.children:
                traverse(child, parent_name)

        traverse(tree.root_node)

        if not chunks and source_code.strip():
            chunks.append(Chunk.create(
                file_path=file_path,
                start_line=1,
                end_line=len(source_code.split('\n')),
                content=source_code,
                parser=PARSER_TAG,
                chunk_type='module',
                language=self.language_tag,
            ))

        return chunks


class PythonChunker(LanguageChunker):
    """Python-specific chunker."""

    def __init__(self):
        super().__init__('python', 'python')

    def _get_splittable_node_types(self) -> Set[str]:
        return {'function_definition', 'class_definition', 'decorated_definition'}

    def extract_metadata(self, node: Any, source: bytes) -> Dict[str, Any]:
        metadata = super().extract_metadata(node, source)

        if node.type == 'decorated_definition':
            metadata['decorators'] = [
                self.get_node_text(child, source) for child in node.children if child.type == 'decorator'
            ]
            for child in node.children:
                if child.type in ('function_definition', 'class_definition'):
                    for subchild in child.children:
                        if subchild.type == 'identifier':
                            metadata['name'] = self.get_node_text(subchild, source)
                            break

        docstring = self._extract_docstring(node, source)
        if docstring:
            metadata['docstring'] = docstring
        return metadata

    def _extract_docstring(self, node: Any, source: bytes) -> Optional[str]:
        """Extract docstring from function or class definition."""
        body_node = None
        for child in node.children:
            if child.type == 'block':
                body_node = child
                break
            if child.type in ('function_definition', 'class_definition'):
                for subchild in child.children:
                    if subchild.type == 'block':
                        body_node = subchild
                        break

        if not body_node or not body_node.children:
            return None

        first_statement = body_node.children[0]
        if first_statement.type != 'expression_statement':
            return None
        for child in first_statement.children:
            if child.type == 'string':
                text = self.get_node_text(child, source)
                if text.startswith(('"""', "'''")):
                    text = text[3:-3]
                elif text.startswith(('"', "'")):
                    text = text[1:-1]
                return text.strip()
        return None


class JavaScriptChunker(LanguageChunker):
    """JavaScript (and JSX) chunker."""

    def __init__(self):
        super().__init__('javascript', 'javascript')

    def _get_splittable_node_types(self) -> Set[str]:
        return {
            'function_declaration',
            'generator_function_declaration',
            'class_declaration',
            'method_definition',
        }

    def extract_metadata(self, node: Any, source: bytes) -> Dict[str, Any]:
        metadata = super().extract_metadata(node, source)
        if node.children and self.get_node_text(node.children[0], source) == 'async':
            metadata['is_async'] = True
        if 'generator' in node.type:
            metadata['is_generator'] = True
        return metadata


class TypeScriptChunker(LanguageChunker):
    """TypeScript chunker; the TSX grammar is used for .tsx files."""

    def __init__(self, use_tsx: bool = False):
        super().__init__('tsx' if use_tsx else 'typescript', 'typescript')

    def _get_splittable_node_types(self) -> Set[str]:
        return {
            'function_declaration',
            'generator_function_declaration',
            'class_declaration',
            'method_definition',
            'interface_declaration',
            'type_alias_declaration',
            'enum_declaration',
        }

    def extract_metadata(self, node: Any, source: bytes) -> Dict[str, Any]:
        metadata = super().extract_metadata(node, source)
        for child in node.children:
            if child.type == 'type_parameters':
                metadata['has_generics'] = True
                break
        return metadata


class TreeSitterChunker:
    """Delegates to language-specific chunkers by file extension."""

    LANGUAGE_MAP: Dict[str, Callable[[], LanguageChunker]] = {
        '.py': PythonChunker,
        '.js': JavaScriptChunker,
        '.jsx': JavaScriptChunker,
        '.mjs': JavaScriptChunker,
        '.cjs': JavaScriptChunker,
        '.ts': TypeScriptChunker,
        '.tsx': lambda: TypeScriptChunker(use_tsx=True),
    }

    def __init__(self):
        self.chunkers: Dict[str, LanguageChunker] = {}

    def is_supported(self, file_path: str) -> bool:
        return PurePosixPath(file_path).suffix.lower() in self.LANGUAGE_MAP

    def get_chunker(self, file_path: str) -> Optional[LanguageChunker]:
        """Get the (lazily created) chunker for a file, or None if unsupported."""
        suffix = PurePosixPath(file_path).suffix.lower()
        if suffix not in self.LANGUAGE_MAP:
            return None
        if suffix not in self.chunkers:
            self.chunkers[suffix] = self.LANGUAGE_MAP[suffix]()
        return self.chunkers[suffix]

    def chunk_code(self, source_code: str, file_path: str) -> List[Chunk]:
        """Chunk already-decoded source. Unsupported files yield no chunks."""
        chunker = self.get_chunker(file_path)
        if chunker is None:
            logger.debug(f"No tree-sitter chunker available for {file_path}")
            return []
        return chunker.chunk_code(source_code, file_path)

    @classmethod
    def get_supported_extensions(cls) -> List[str]:
        return sorted(cls.LANGUAGE_MAP)

"""
JSON Patch engine (RFC 6902) with JSON Pointer (RFC 6901) addressing.

diff() produces a patch between two tree values, apply_patch() applies one.
Application is atomic: operations run against a private copy, so a failing
operation leaves the caller's document untouched.
"""

import copy
from typing import Any, Iterable, List, Tuple, Union

import structlog

from agui_engine.config.security import assert_safe_operations
from agui_engine.models.schemas import PatchOperation

logger = structlog.get_logger()

APPEND_INDEX = "-"


class PatchError(Exception):
    """Base class for patch application failures"""

    def __init__(self, message: str, index: int = None, path: str = None):
        self.index = index
        self.path = path
        location = f"operation {index} " if index is not None else ""
        super().__init__(f"{location}at '{path}': {message}" if path is not None else message)


class PathNotFoundError(PatchError):
    """Path (or an intermediate location) does not resolve"""


class TypeMismatchError(PatchError):
    """Path traverses through a value that is not an object or array"""


class PatchTestFailedError(PatchError):
    """A 'test' operation did not match"""


class InvalidPatchError(PatchError):
    """Malformed operation or pointer"""


# ============================================================================
# JSON Pointer helpers
# ============================================================================


def escape_segment(segment: str) -> str:
    """Escape one reference token: '~' -> '~0', '/' -> '~1'"""
    return segment.replace("~", "~0").replace("/", "~1")


def unescape_segment(segment: str) -> str:
    """Undo escape_segment; '~1' is replaced before '~0'"""
    return segment.replace("~1", "/").replace("~0", "~")


def parse_pointer(pointer: str) -> List[str]:
    """Split a JSON Pointer into unescaped reference tokens. '' is the root."""
    if pointer == "":
        return []
    if not pointer.startswith("/"):
        raise InvalidPatchError("JSON Pointer must be empty or start with '/'", path=pointer)
    return [unescape_segment(segment) for segment in pointer.split("/")[1:]]


def join_pointer(base: str, segment: Union[str, int]) -> str:
    """Append one reference token to a pointer"""
    return f"{base}/{escape_segment(str(segment))}"


def json_equal(left: Any, right: Any) -> bool:
    """
    Structural equality on JSON values.

    Unlike ==, booleans never equal numbers (True != 1).
    """
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, dict) and isinstance(right, dict):
        if left.keys() != right.keys():
            return False
        return all(json_equal(left[key], right[key]) for key in left)
    if isinstance(left, list) and isinstance(right, list):
        if len(left) != len(right):
            return False
        return all(json_equal(a, b) for a, b in zip(left, right))
    if isinstance(left, (dict, list)) or isinstance(right, (dict, list)):
        return False
    return left == right


def _array_index(token: str, array: list, pointer: str, index: int, allow_end: bool) -> int:
    """Resolve an array reference token to an integer position"""
    if token == APPEND_INDEX:
        if allow_end:
            return len(array)
        raise PathNotFoundError("'-' does not address an existing element", index=index, path=pointer)

    # ASCII digits only; isdigit() alone accepts '²' and '١'
    if not (token.isascii() and token.isdigit()) or (len(token) > 1 and token[0] == "0"):
        raise PathNotFoundError(f"'{token}' is not a valid array index", index=index, path=pointer)

    position = int(token)
    limit = len(array) if allow_end else len(array) - 1
    if position > limit:
        raise PathNotFoundError(
            f"array index {position} out of range (length {len(array)})", index=index, path=pointer
        )
    return position


def _resolve_parent(document: Any, pointer: str, index: int) -> Tuple[Any, str]:
    """
    Walk to the container holding the last token of a non-root pointer.

    Returns:
        (parent container, last token)
    """
    tokens = parse_pointer(pointer)
    current = document

    for token in tokens[:-1]:
        if isinstance(current, dict):
            if token not in current:
                raise PathNotFoundError(f"member '{token}' does not exist", index=index, path=pointer)
            current = current[token]
        elif isinstance(current, list):
            current = current[_array_index(token, current, pointer, index, allow_end=False)]
        else:
            raise TypeMismatchError(
                f"cannot traverse into {type(current).__name__} value", index=index, path=pointer
            )

    if not isinstance(current, (dict, list)):
        raise TypeMismatchError(
            f"parent of target is a {type(current).__name__} value, not a container",
            index=index,
            path=pointer,
        )

    return current, tokens[-1]


def resolve_pointer(document: Any, pointer: str, index: int = None) -> Any:
    """
    Return the value addressed by a pointer.

    Raises:
        PathNotFoundError: Missing member or index out of range
        TypeMismatchError: Traversal through a scalar
    """
    if pointer == "":
        return document

    parent, token = _resolve_parent(document, pointer, index)
    if isinstance(parent, dict):
        if token not in parent:
            raise PathNotFoundError(f"member '{token}' does not exist", index=index, path=pointer)
        return parent[token]
    return parent[_array_index(token, parent, pointer, index, allow_end=False)]


# ============================================================================
# Operations
# ============================================================================


def _add(document: Any, pointer: str, value: Any, index: int) -> Any:
    if pointer == "":
        return value

    parent, token = _resolve_parent(document, pointer, index)
    if isinstance(parent, dict):
        parent[token] = value
    else:
        parent.insert(_array_index(token, parent, pointer, index, allow_end=True), value)
    return document


def _remove(document: Any, pointer: str, index: int) -> Tuple[Any, Any]:
    """Remove the addressed value; returns (document, removed value)"""
    if pointer == "":
        raise InvalidPatchError("cannot remove the document root", index=index, path=pointer)

    parent, token = _resolve_parent(document, pointer, index)
    if isinstance(parent, dict):
        if token not in parent:
            raise PathNotFoundError(f"member '{token}' does not exist", index=index, path=pointer)
        return document, parent.pop(token)
    return document, parent.pop(_array_index(token, parent, pointer, index, allow_end=False))


def _replace(document: Any, pointer: str, value: Any, index: int) -> Any:
    if pointer == "":
        return value

    parent, token = _resolve_parent(document, pointer, index)
    if isinstance(parent, dict):
        if token not in parent:
            raise PathNotFoundError(f"member '{token}' does not exist", index=index, path=pointer)
        parent[token] = value
    else:
        parent[_array_index(token, parent, pointer, index, allow_end=False)] = value
    return document


def _coerce_operation(operation: Union[PatchOperation, dict], index: int) -> PatchOperation:
    if isinstance(operation, PatchOperation):
        return operation
    if not isinstance(operation, dict):
        raise InvalidPatchError(f"operation must be an object, got {type(operation).__name__}", index=index)
    try:
        return PatchOperation.model_validate(operation)
    except ValueError as e:
        raise InvalidPatchError(str(e), index=index, path=operation.get("path")) from e


def apply_operation(document: Any, operation: PatchOperation, index: int = 0) -> Any:
    """
    Apply one operation in place and return the (possibly new) document root.

    Not atomic on its own; use apply_patch for all-or-nothing semantics.
    """
    op = operation.op
    path = operation.path

    if op == "add":
        return _add(document, path, copy.deepcopy(operation.value), index)

    if op == "remove":
        document, _ = _remove(document, path, index)
        return document

    if op == "replace":
        return _replace(document, path, copy.deepcopy(operation.value), index)

    if op == "move":
        source = operation.from_
        if path == source:
            resolve_pointer(document, source, index)
            return document
        if path.startswith(source + "/"):
            raise InvalidPatchError("cannot move a value into one of its children", index=index, path=path)
        # Read and detach the source first, then evaluate the target on the
        # resulting document (indices in a shared parent array shift here).
        document, value = _remove(document, source, index)
        return _add(document, path, value, index)

    if op == "copy":
        value = copy.deepcopy(resolve_pointer(document, operation.from_, index))
        return _add(document, path, value, index)

    if op == "test":
        actual = resolve_pointer(document, path, index)
        if not json_equal(actual, operation.value):
            raise PatchTestFailedError(
                f"expected {operation.value!r}, found {actual!r}", index=index, path=path
            )
        return document

    raise InvalidPatchError(f"unknown operation '{op}'", index=index, path=path)


def apply_patch(document: Any, patch: Iterable[Union[PatchOperation, dict]]) -> Any:
    """
    Apply a patch and return the patched document.

    Operations run in order, each against the result of the previous ones.
    The input document is never mutated: on any failure the error propagates
    and the caller still holds the original, unchanged value.

    Raises:
        SecurityViolationError: An operation targets a reserved path
        PatchError: PathNotFoundError, TypeMismatchError,
            PatchTestFailedError or InvalidPatchError, carrying the failing
            operation index and path
    """
    operations = [_coerce_operation(operation, index) for index, operation in enumerate(patch)]

    # Rejected before anything is applied
    assert_safe_operations(operations)

    result = copy.deepcopy(document)
    for index, operation in enumerate(operations):
        try:
            result = apply_operation(result, operation, index)
        except PatchError as e:
            logger.debug(
                "patch_operation_failed",
                operation_index=index,
                op=operation.op,
                path=operation.path,
                error=str(e),
            )
            raise

    return result


# ============================================================================
# Diff
# ============================================================================


def _diff_into(before: Any, after: Any, pointer: str, operations: List[PatchOperation]) -> None:
    if json_equal(before, after):
        return

    if isinstance(before, dict) and isinstance(after, dict):
        for key in before:
            if key not in after:
                operations.append(PatchOperation(op="remove", path=join_pointer(pointer, key)))
        for key, value in after.items():
            child = join_pointer(pointer, key)
            if key in before:
                _diff_into(before[key], value, child, operations)
            else:
                operations.append(PatchOperation(op="add", path=child, value=copy.deepcopy(value)))
        return

    if isinstance(before, list) and isinstance(after, list):
        shared = min(len(before), len(after))
        for position in range(shared):
            _diff_into(before[position], after[position], join_pointer(pointer, position), operations)

        # Trailing removals from the end so earlier indices stay valid
        for position in range(len(before) - 1, shared - 1, -1):
            operations.append(PatchOperation(op="remove", path=join_pointer(pointer, position)))

        for value in after[shared:]:
            operations.append(
                PatchOperation(op="add", path=join_pointer(pointer, APPEND_INDEX), value=copy.deepcopy(value))
            )
        return

    operations.append(PatchOperation(op="replace", path=pointer, value=copy.deepcopy(after)))


def diff(before: Any, after: Any) -> List[PatchOperation]:
    """
    Compute a patch turning 'before' into 'after'.

    Objects are compared member by member. Arrays are compared
    positionally: differing elements at a shared index are diffed in place,
    surplus trailing elements are removed, new trailing elements are
    appended with '/-'. Holds apply_patch(before, diff(before, after)) == after.
    """
    operations: List[PatchOperation] = []
    _diff_into(before, after, "", operations)
    return operations

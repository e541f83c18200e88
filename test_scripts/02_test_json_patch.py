#!/usr/bin/env python3
"""
Test: JSON Patch Engine
Purpose: Verify diff/apply semantics (RFC 6902) and pointer handling (RFC 6901)

Tests:
- apply(a, diff(a, b)) == b across nested objects, arrays and scalars
- Array diff is positional with '/-' appends and trailing removes
- Failing patches leave the document unchanged (atomicity)
- Error types carry the failing operation index and path
- move/copy/test semantics, including moves inside one array
- Pointer escaping and reserved segments
"""

import asyncio
import copy
import sys

from fixtures import (
    run_tests,
    assert_equal, assert_true, assert_false, assert_raises,
)

from agui_engine.config.security import SecurityViolationError
from agui_engine.core.json_patch import (
    InvalidPatchError,
    PatchTestFailedError,
    PathNotFoundError,
    TypeMismatchError,
    apply_patch,
    diff,
    escape_segment,
    json_equal,
    parse_pointer,
    resolve_pointer,
)


# Pairs of (before, after) tree values
DIFF_CASES = [
    ({}, {}),
    ({"a": 1}, {"a": 2}),
    ({"a": 1, "b": 2}, {"b": 2, "c": 3}),
    ({"loading": True, "results": []}, {"loading": False, "results": [{"id": 1}]}),
    ([1, 2, 3], [1, 2]),
    ([1, 2], [1, 2, 3, 4]),
    ([1, 2, 3, 4], [4]),
    ([{"x": 1}, {"x": 2}], [{"x": 1}, {"x": 3, "y": [True]}]),
    ({"nested": {"deep": {"list": [1, {"k": "v"}]}}}, {"nested": {"deep": {"list": [{"k": "v"}]}}}),
    ({"a/b": 1, "c~d": 2}, {"a/b": 3, "c~d": 4, "": 5}),
    ({"a": [1, 2]}, {"a": {"0": 1}}),
    ({"a": 1}, [1]),
    ("text", 42),
    (None, {"a": None}),
    ({"flag": 1}, {"flag": True}),
    ({"n": 1.5}, {"n": 1.5}),
]


# ============================================================================
# Test: Round trip
# ============================================================================

async def test_diff_apply_round_trip():
    """Test applying a computed diff reproduces the target value"""
    for before, after in DIFF_CASES:
        patch = diff(before, after)
        result = apply_patch(before, patch)
        assert_true(json_equal(result, after), f"Round trip failed for {before!r} -> {after!r}: {result!r}")


async def test_diff_of_equal_values_is_empty():
    """Test equal values produce an empty patch"""
    assert_equal(diff({"a": [1, {"b": None}]}, {"a": [1, {"b": None}]}), [])


async def test_diff_distinguishes_bool_from_number():
    """Test True and 1 are different values"""
    patch = diff({"flag": 1}, {"flag": True})
    assert_equal([op.to_dict() for op in patch], [{"op": "replace", "path": "/flag", "value": True}])


async def test_array_diff_is_positional():
    """Test array diff uses in-place replace, trailing removes and '/-' appends"""
    patch = [op.to_dict() for op in diff({"arr": [1, 2, 3]}, {"arr": [1, 9]})]
    assert_equal(patch, [
        {"op": "replace", "path": "/arr/1", "value": 9},
        {"op": "remove", "path": "/arr/2"},
    ])

    patch = [op.to_dict() for op in diff([1], [1, 2, 3])]
    assert_equal(patch, [
        {"op": "add", "path": "/-", "value": 2},
        {"op": "add", "path": "/-", "value": 3},
    ])

    # Trailing removes run from the end so earlier indices stay valid
    patch = [op.to_dict() for op in diff([1, 2, 3, 4], [1])]
    assert_equal([op["path"] for op in patch], ["/3", "/2", "/1"])


async def test_diff_escapes_keys():
    """Test keys with '/' and '~' are escaped in generated paths"""
    patch = [op.to_dict() for op in diff({}, {"a/b": 1, "c~d": 2})]
    assert_equal([op["path"] for op in patch], ["/a~1b", "/c~0d"])


async def test_diff_does_not_alias_input():
    """Test values in a patch are copies of the target"""
    after = {"items": [{"id": 1}]}
    patch = diff({}, after)
    after["items"][0]["id"] = 99
    assert_equal(apply_patch({}, patch), {"items": [{"id": 1}]})


# ============================================================================
# Test: Atomicity
# ============================================================================

async def test_failed_patch_leaves_document_unchanged():
    """Test a failing operation rolls back every earlier one"""
    document = {"a": 1, "list": [1, 2]}
    original = copy.deepcopy(document)

    patch = [
        {"op": "replace", "path": "/a", "value": 2},
        {"op": "add", "path": "/list/-", "value": 3},
        {"op": "test", "path": "/a", "value": 1},
    ]
    error = assert_raises(PatchTestFailedError, apply_patch, document, patch)

    assert_equal(document, original, "Document must not be mutated")
    assert_equal(error.index, 2)
    assert_equal(error.path, "/a")


async def test_successful_patch_does_not_mutate_input():
    """Test apply returns a new document"""
    document = {"a": {"b": 1}}
    result = apply_patch(document, [{"op": "replace", "path": "/a/b", "value": 2}])

    assert_equal(result, {"a": {"b": 2}})
    assert_equal(document, {"a": {"b": 1}})


# ============================================================================
# Test: Errors
# ============================================================================

async def test_path_not_found():
    """Test missing paths raise PathNotFoundError naming the path"""
    error = assert_raises(PathNotFoundError, apply_patch, {}, [{"op": "add", "path": "/missing/x", "value": 1}])
    assert_equal(error.path, "/missing/x")
    assert_equal(error.index, 0)

    assert_raises(PathNotFoundError, apply_patch, {}, [{"op": "remove", "path": "/a"}])
    assert_raises(PathNotFoundError, apply_patch, {}, [{"op": "replace", "path": "/a", "value": 1}])
    assert_raises(PathNotFoundError, apply_patch, {"a": 1}, [{"op": "move", "from": "/b", "path": "/c"}])
    assert_raises(PathNotFoundError, apply_patch, [1], [{"op": "replace", "path": "/5", "value": 1}])
    assert_raises(PathNotFoundError, apply_patch, [1], [{"op": "add", "path": "/01", "value": 1}])
    assert_raises(PathNotFoundError, apply_patch, [1], [{"op": "remove", "path": "/-"}])


async def test_non_ascii_digits_are_not_indices():
    """Test digits outside ASCII never address an array element"""
    document = {"a": [1, 2]}
    for token in ("\u00b2", "\u0661", "\uff11"):
        error = assert_raises(
            PathNotFoundError, apply_patch, document, [{"op": "replace", "path": f"/a/{token}", "value": 0}]
        )
        assert_equal(error.path, f"/a/{token}")
    assert_equal(document, {"a": [1, 2]})


async def test_type_mismatch():
    """Test traversing through a scalar raises TypeMismatchError"""
    error = assert_raises(
        TypeMismatchError, apply_patch, {"a": 5}, [{"op": "add", "path": "/a/b", "value": 1}]
    )
    assert_equal(error.path, "/a/b")

    assert_raises(TypeMismatchError, apply_patch, {"a": "s"}, [{"op": "replace", "path": "/a/b/c", "value": 1}])


async def test_invalid_operations():
    """Test malformed operations raise InvalidPatchError"""
    assert_raises(InvalidPatchError, apply_patch, {}, [{"op": "jump", "path": "/a"}])
    assert_raises(InvalidPatchError, apply_patch, {}, [{"op": "add", "path": "/a"}])
    assert_raises(InvalidPatchError, apply_patch, {}, [{"op": "move", "path": "/a"}])
    assert_raises(InvalidPatchError, apply_patch, {}, [{"op": "add", "path": "a", "value": 1}])
    assert_raises(InvalidPatchError, apply_patch, {"a": 1}, [{"op": "remove", "path": ""}])
    assert_raises(InvalidPatchError, apply_patch, {"a": {"b": 1}}, [{"op": "move", "from": "/a", "path": "/a/b/c"}])


# ============================================================================
# Test: Operations
# ============================================================================

async def test_add_semantics():
    """Test add inserts into arrays, sets members and replaces the root"""
    assert_equal(apply_patch([1, 3], [{"op": "add", "path": "/1", "value": 2}]), [1, 2, 3])
    assert_equal(apply_patch([1], [{"op": "add", "path": "/1", "value": 2}]), [1, 2])
    assert_equal(apply_patch({"a": 1}, [{"op": "add", "path": "/a", "value": 2}]), {"a": 2})
    assert_equal(apply_patch({"a": 1}, [{"op": "add", "path": "", "value": [1]}]), [1])
    assert_equal(apply_patch({}, [{"op": "add", "path": "/n", "value": None}]), {"n": None})


async def test_move_within_same_array():
    """Test moving the first element to the end of its own array"""
    result = apply_patch({"arr": ["a", "b", "c"]}, [{"op": "move", "from": "/arr/0", "path": "/arr/-"}])
    assert_equal(result, {"arr": ["b", "c", "a"]})

    result = apply_patch({"arr": ["a", "b", "c"]}, [{"op": "move", "from": "/arr/2", "path": "/arr/0"}])
    assert_equal(result, {"arr": ["c", "a", "b"]})

    result = apply_patch({"a": 1}, [{"op": "move", "from": "/a", "path": "/a"}])
    assert_equal(result, {"a": 1})


async def test_copy_is_deep():
    """Test copied values are independent of their source"""
    result = apply_patch(
        {"src": {"list": [1]}},
        [
            {"op": "copy", "from": "/src", "path": "/dst"},
            {"op": "add", "path": "/dst/list/-", "value": 2},
        ],
    )
    assert_equal(result, {"src": {"list": [1]}, "dst": {"list": [1, 2]}})


async def test_test_operation():
    """Test 'test' compares structurally and strictly on types"""
    document = {"a": [1, {"b": None}], "t": True}
    assert_equal(apply_patch(document, [{"op": "test", "path": "/a", "value": [1, {"b": None}]}]), document)
    assert_raises(PatchTestFailedError, apply_patch, document, [{"op": "test", "path": "/t", "value": 1}])
    assert_raises(PathNotFoundError, apply_patch, document, [{"op": "test", "path": "/zzz", "value": 1}])


async def test_operations_see_prior_results():
    """Test each operation applies to the result of the previous ones"""
    result = apply_patch({}, [
        {"op": "add", "path": "/a", "value": {}},
        {"op": "add", "path": "/a/b", "value": [1]},
        {"op": "add", "path": "/a/b/-", "value": 2},
        {"op": "test", "path": "/a/b/1", "value": 2},
    ])
    assert_equal(result, {"a": {"b": [1, 2]}})


# ============================================================================
# Test: Pointers and security
# ============================================================================

async def test_pointer_escaping():
    """Test ~0 / ~1 escaping and decoding order"""
    assert_equal(escape_segment("a/b~c"), "a~1b~0c")
    assert_equal(parse_pointer("/a~1b/c~0d/~01"), ["a/b", "c~d", "~1"])
    assert_equal(parse_pointer(""), [])
    assert_equal(resolve_pointer({"a/b": {"": 7}}, "/a~1b/"), 7)


async def test_reserved_segments_rejected():
    """Test prototype-pollution segments are rejected before anything applies"""
    for path in ("/__proto__/x", "/a/constructor", "/prototype", "/a/__proto__"):
        error = assert_raises(SecurityViolationError, apply_patch, {"a": {}}, [{"op": "add", "path": path, "value": 1}])
        assert_equal(error.pointer, path)

    error = assert_raises(
        SecurityViolationError,
        apply_patch,
        {"a": 1},
        [{"op": "replace", "path": "/a", "value": 2}, {"op": "copy", "from": "/__proto__", "path": "/b"}],
    )
    assert_equal(error.index, 1)


async def test_json_equal():
    """Test structural equality helper"""
    assert_true(json_equal({"a": [1, 2]}, {"a": [1, 2]}))
    assert_true(json_equal(1, 1.0))
    assert_false(json_equal(True, 1))
    assert_false(json_equal(False, 0))
    assert_false(json_equal([1], {"0": 1}))
    assert_false(json_equal({"a": 1}, {"a": 1, "b": 2}))


# ============================================================================
# Main Test Runner
# ============================================================================

async def main():
    """Run all JSON patch tests"""
    return await run_tests("JSON Patch Engine Tests", [
        ("Round trip: apply(a, diff(a, b)) == b", test_diff_apply_round_trip),
        ("Diff of equal values is empty", test_diff_of_equal_values_is_empty),
        ("Diff distinguishes bool from number", test_diff_distinguishes_bool_from_number),
        ("Array diff is positional", test_array_diff_is_positional),
        ("Diff escapes keys", test_diff_escapes_keys),
        ("Diff does not alias input", test_diff_does_not_alias_input),
        ("Atomic: failed patch leaves document unchanged", test_failed_patch_leaves_document_unchanged),
        ("Successful patch does not mutate input", test_successful_patch_does_not_mutate_input),
        ("Error: path not found", test_path_not_found),
        ("Error: non-ASCII digits are not indices", test_non_ascii_digits_are_not_indices),
        ("Error: type mismatch", test_type_mismatch),
        ("Error: invalid operations", test_invalid_operations),
        ("Add semantics", test_add_semantics),
        ("Move within same array", test_move_within_same_array),
        ("Copy is deep", test_copy_is_deep),
        ("Test operation", test_test_operation),
        ("Operations see prior results", test_operations_see_prior_results),
        ("Pointer escaping", test_pointer_escaping),
        ("Reserved segments rejected", test_reserved_segments_rejected),
        ("json_equal helper", test_json_equal),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)

"""Three-way strategic merge patches for node objects.

Nodes are plain JSON-shaped dicts (``metadata``, ``spec``, ``status``).
Lists whose elements are identified by a merge key (node conditions by
``type``, taints by ``key`` and so on) are merged element by element, so
entries written by other parties survive a patch.
"""

from __future__ import annotations

import copy
import json
from typing import Any

LAST_APPLIED_NODE_STATUS = "virtual-kubelet.io/last-applied-node-status"
LAST_APPLIED_OBJECT_META = "virtual-kubelet.io/last-applied-object-meta"

_SPECIAL_ANNOTATIONS = frozenset({LAST_APPLIED_NODE_STATUS, LAST_APPLIED_OBJECT_META})

_PATCH_DIRECTIVE = "$patch"

# Merge keys of the node schema, by path of field names from the root.
MERGE_KEYS: dict[tuple[str, ...], str] = {
    ("status", "conditions"): "type",
    ("status", "addresses"): "type",
    ("status", "volumesAttached"): "name",
    ("spec", "taints"): "key",
    ("metadata", "ownerReferences"): "uid",
}

Path = tuple[str, ...]


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def simplest_object_metadata(base_meta: dict | None, meta_with_labels_and_annotations: dict | None) -> dict:
    """Name, namespace and uid from the first metadata; labels and annotations from the second.

    The annotations that record what was last applied are never copied.
    """
    base_meta = base_meta or {}
    result: dict[str, Any] = {}
    for field in ("namespace", "name", "uid"):
        if base_meta.get(field):
            result[field] = base_meta[field]
    result["annotations"] = {}
    if meta_with_labels_and_annotations is not None:
        labels = meta_with_labels_and_annotations.get("labels")
        result["labels"] = labels if labels is not None else {}
        for key, value in (meta_with_labels_and_annotations.get("annotations") or {}).items():
            if key not in _SPECIAL_ANNOTATIONS:
                result["annotations"][key] = value
    return result


def _diff(original: dict, modified: dict, path: Path, *, ignore_changes: bool, ignore_deletions: bool) -> dict:
    patch: dict[str, Any] = {}
    for key, mod_val in modified.items():
        sub = path + (key,)
        if key not in original:
            if not ignore_changes:
                patch[key] = copy.deepcopy(mod_val)
            continue
        orig_val = original[key]
        merge_key = MERGE_KEYS.get(sub)
        if isinstance(orig_val, dict) and isinstance(mod_val, dict):
            sub_patch = _diff(orig_val, mod_val, sub, ignore_changes=ignore_changes, ignore_deletions=ignore_deletions)
            if sub_patch:
                patch[key] = sub_patch
        elif merge_key and isinstance(orig_val, list) and isinstance(mod_val, list):
            items = _diff_list(
                orig_val, mod_val, sub, merge_key, ignore_changes=ignore_changes, ignore_deletions=ignore_deletions
            )
            if items:
                patch[key] = items
        elif orig_val != mod_val and not ignore_changes:
            patch[key] = copy.deepcopy(mod_val)
    if not ignore_deletions:
        for key in original:
            if key not in modified:
                patch[key] = None
    return patch


def _diff_list(
    original: list, modified: list, path: Path, merge_key: str, *, ignore_changes: bool, ignore_deletions: bool
) -> list:
    originals = {item.get(merge_key): item for item in original if isinstance(item, dict)}
    seen = set()
    out: list[Any] = []
    for item in modified:
        if not isinstance(item, dict):
            continue
        key = item.get(merge_key)
        seen.add(key)
        if key not in originals:
            if not ignore_changes:
                out.append(copy.deepcopy(item))
            continue
        element_patch = _diff(
            originals[key], item, path, ignore_changes=ignore_changes, ignore_deletions=ignore_deletions
        )
        if element_patch:
            element_patch[merge_key] = key
            out.append(element_patch)
    if not ignore_deletions:
        for key in originals:
            if key not in seen:
                out.append({_PATCH_DIRECTIVE: "delete", merge_key: key})
    return out


def _merge_patches(first: dict, second: dict, path: Path) -> dict:
    result = copy.deepcopy(first)
    for key, value in second.items():
        sub = path + (key,)
        current = result.get(key)
        merge_key = MERGE_KEYS.get(sub)
        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = _merge_patches(current, value, sub)
        elif merge_key and isinstance(current, list) and isinstance(value, list):
            result[key] = _merge_patch_lists(current, value, sub, merge_key)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _merge_patch_lists(first: list, second: list, path: Path, merge_key: str) -> list:
    out = copy.deepcopy(first)
    for item in second:
        position = next(
            (
                idx
                for idx, existing in enumerate(out)
                if isinstance(existing, dict)
                and isinstance(item, dict)
                and existing.get(merge_key) == item.get(merge_key)
                and _PATCH_DIRECTIVE not in existing
                and _PATCH_DIRECTIVE not in item
            ),
            None,
        )
        if position is None:
            out.append(copy.deepcopy(item))
        else:
            out[position] = _merge_patches(out[position], item, path)
    return out


def three_way_merge_patch(original: dict, modified: dict, current: dict) -> dict:
    """Patch that moves current to modified, deleting only what changed from original to modified.

    Fields and list elements present in current but never in original or
    modified (written by someone else) are left alone.
    """
    delta = _diff(current or {}, modified or {}, (), ignore_changes=False, ignore_deletions=True)
    deletions = _diff(original or {}, modified or {}, (), ignore_changes=True, ignore_deletions=False)
    return _merge_patches(deletions, delta, ())


def _apply(document: dict, patch: dict, path: Path) -> dict:
    result = copy.deepcopy(document)
    for key, value in patch.items():
        sub = path + (key,)
        merge_key = MERGE_KEYS.get(sub)
        if value is None:
            result.pop(key, None)
        elif isinstance(value, dict):
            base = result.get(key)
            result[key] = _apply(base if isinstance(base, dict) else {}, value, sub)
        elif merge_key and isinstance(value, list):
            base = result.get(key)
            result[key] = _apply_list(base if isinstance(base, list) else [], value, sub, merge_key)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _apply_list(items: list, patch_items: list, path: Path, merge_key: str) -> list:
    out = copy.deepcopy(items)
    for patch_item in patch_items:
        if not isinstance(patch_item, dict):
            out.append(copy.deepcopy(patch_item))
            continue
        key = patch_item.get(merge_key)
        if patch_item.get(_PATCH_DIRECTIVE) == "delete":
            out = [item for item in out if not (isinstance(item, dict) and item.get(merge_key) == key)]
            continue
        for idx, existing in enumerate(out):
            if isinstance(existing, dict) and existing.get(merge_key) == key:
                out[idx] = _apply(existing, patch_item, path)
                break
        else:
            out.append(_apply({}, patch_item, path))
    return out


def apply_strategic_merge_patch(document: dict | None, patch: dict) -> dict:
    """Return a copy of document with the patch applied; the input is not changed."""
    return _apply(document or {}, patch, ())


def _load_annotation(key: str, value: str) -> dict:
    what = "object metadata" if key == LAST_APPLIED_OBJECT_META else "status"
    try:
        loaded = json.loads(value)
    except ValueError as err:
        raise ValueError(f"Cannot unmarshal old node {what} (key: {key!r}): {value!r}") from err
    if not isinstance(loaded, dict):
        raise ValueError(f"Cannot unmarshal old node {what} (key: {key!r}): {value!r}")
    return loaded


def prepare_three_way_patch(provider_node: dict, api_server_node: dict) -> dict:
    """Build the status patch that makes the API server node match what the provider wants.

    The last applied metadata and status are stored in annotations on the node so
    that the next patch only deletes what this controller itself wrote before.
    """
    api_meta = api_server_node.get("metadata") or {}
    annotations = api_meta.get("annotations") or {}

    old_node: dict[str, Any] = {}
    if LAST_APPLIED_NODE_STATUS in annotations and LAST_APPLIED_OBJECT_META in annotations:
        old_node["metadata"] = _load_annotation(LAST_APPLIED_OBJECT_META, annotations[LAST_APPLIED_OBJECT_META])
        old_node["status"] = _load_annotation(LAST_APPLIED_NODE_STATUS, annotations[LAST_APPLIED_NODE_STATUS])

    new_meta = simplest_object_metadata(api_meta, provider_node.get("metadata") or {})
    new_status = copy.deepcopy(provider_node.get("status") or {})
    # The metadata must be recorded before either annotation is added to it.
    new_meta["annotations"][LAST_APPLIED_OBJECT_META] = _dumps(new_meta)
    new_meta["annotations"][LAST_APPLIED_NODE_STATUS] = _dumps(new_status)
    new_node = {"metadata": new_meta, "status": new_status}

    return three_way_merge_patch(old_node, new_node, api_server_node)
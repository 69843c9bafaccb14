"""Layer registry behaviour: naming, membership, visibility/lock propagation and persistence."""

import pytest
from hypothesis import given, settings, strategies as st

from codraw.canvas.models import LAYER_META_KEY, Shape, new_shape_id
from codraw.canvas.store import CanvasStore
from codraw.engine.layers import (
    DEFAULT_LAYER_ID,
    DEFAULT_LAYER_NAME,
    LayerRegistry,
    auto_name_number,
    normalize_layer_name,
)


def _registry():
    store = CanvasStore()
    return store, LayerRegistry(store)


def _draw(store, layer_id=None, **fields):
    meta = {LAYER_META_KEY: layer_id} if layer_id else {}
    return store.create_shape(Shape(id=new_shape_id(), w=10, h=10, meta=meta, **fields))


def _names(registry):
    return [layer.name for layer in registry.layers]


def test_starts_with_background_layer():
    _, registry = _registry()
    assert [(layer.id, layer.name) for layer in registry.layers] == [(DEFAULT_LAYER_ID, DEFAULT_LAYER_NAME)]
    assert registry.active_layer_id == DEFAULT_LAYER_ID


def test_normalize_layer_name():
    assert normalize_layer_name("  Layer   2 ") == "2"
    assert normalize_layer_name("LAYER sky") == "sky"
    assert normalize_layer_name("Background") == "background"
    assert auto_name_number("Layer 12") == 12
    assert auto_name_number("Sky") is None


def test_add_layer_names_sequentially_and_activates():
    _, registry = _registry()
    first = registry.add_layer()
    second = registry.add_layer()

    assert _names(registry) == ["Background", "Layer 1", "Layer 2"]
    assert registry.active_layer_id == second
    assert first != second


def test_add_layer_never_reuses_retired_number():
    _, registry = _registry()
    registry.add_layer()
    second = registry.add_layer()
    registry.delete_layer(second)

    registry.add_layer()

    assert _names(registry) == ["Background", "Layer 1", "Layer 3"]


def test_delete_sole_or_unknown_layer_is_noop():
    _, registry = _registry()
    registry.delete_layer(DEFAULT_LAYER_ID)
    registry.delete_layer("missing")
    assert len(registry.layers) == 1


def test_delete_layer_removes_locked_members_and_activates_follower():
    store, registry = _registry()
    first = registry.add_layer()
    second = registry.add_layer()
    keep = _draw(store, DEFAULT_LAYER_ID)
    doomed = _draw(store, first)
    registry.toggle_lock(first)
    assert store.get_shape(doomed.id).is_locked

    registry.set_active_layer(first)
    registry.delete_layer(first)

    assert store.get_shape(doomed.id) is None
    assert store.get_shape(keep.id) is not None
    assert registry.active_layer_id == second
    assert registry.get_layer(first) is None


def test_delete_last_positioned_active_layer_falls_back_to_new_last():
    _, registry = _registry()
    only = registry.add_layer()
    registry.delete_layer(only)
    assert registry.active_layer_id == DEFAULT_LAYER_ID


def test_before_create_hook_tags_and_inherits_flags():
    store, registry = _registry()
    hidden = registry.add_layer()
    registry.toggle_visibility(hidden)
    locked = registry.add_layer()
    registry.toggle_lock(locked)

    in_hidden = _draw(store, hidden)
    in_locked = _draw(store, locked)
    untagged = _draw(store)
    bogus = _draw(store, "no-such-layer")

    assert in_hidden.opacity == 0.0
    assert in_hidden.layer_id == hidden
    assert in_locked.is_locked
    # untagged shapes land on the active layer
    assert untagged.layer_id == locked
    assert bogus.layer_id == locked


def test_toggle_visibility_touches_current_members_only():
    store, registry = _registry()
    layer = registry.add_layer()
    member = _draw(store, layer)
    other = _draw(store, DEFAULT_LAYER_ID)

    registry.toggle_visibility(layer)
    assert store.get_shape(member.id).opacity == 0.0
    assert store.get_shape(other.id).opacity == 1.0
    assert not registry.is_layer_visible(layer)

    registry.toggle_visibility(layer)
    assert store.get_shape(member.id).opacity == 1.0
    assert registry.is_layer_visible(layer)


def test_toggle_visibility_reaches_locked_members():
    store, registry = _registry()
    layer = registry.add_layer()
    member = _draw(store, layer)
    registry.toggle_lock(layer)

    registry.toggle_visibility(layer)

    shape = store.get_shape(member.id)
    assert shape.opacity == 0.0
    assert shape.is_locked


def test_rename_layer_ignores_blank_names():
    _, registry = _registry()
    layer = registry.add_layer()
    registry.rename_layer(layer, "  Sky  ")
    registry.rename_layer(layer, "   ")
    assert registry.get_layer(layer).name == "Sky"


def test_move_layer_restacks_shapes():
    store, registry = _registry()
    bottom = _draw(store, DEFAULT_LAYER_ID)
    layer = registry.add_layer()
    top = _draw(store, layer)
    assert store.shape_ids() == [bottom.id, top.id]

    registry.move_layer(layer, "down")

    assert [item.id for item in registry.layers] == [layer, DEFAULT_LAYER_ID]
    assert store.shape_ids() == [top.id, bottom.id]

    # already at the back
    registry.move_layer(layer, "down")
    assert [item.id for item in registry.layers] == [layer, DEFAULT_LAYER_ID]


def test_assign_shape_moves_it_between_layers():
    store, registry = _registry()
    layer = registry.add_layer()
    shape = _draw(store, DEFAULT_LAYER_ID)

    registry.assign_shape_to_layer(shape.id, layer)
    registry.assign_shape_to_layer(shape.id, layer)

    index = registry.shape_index()
    assert index[layer] == [shape.id]
    assert index[DEFAULT_LAYER_ID] == []
    assert registry.layer_for_shape(shape.id) == layer


def test_assign_shape_to_unknown_layer_is_noop():
    store, registry = _registry()
    shape = _draw(store)
    registry.assign_shape_to_layer(shape.id, "missing")
    registry.assign_shape_to_layer("shape:missing", DEFAULT_LAYER_ID)
    assert registry.layer_for_shape(shape.id) == DEFAULT_LAYER_ID


def test_find_or_create_layer_is_stable():
    _, registry = _registry()
    first = registry.find_or_create_layer("Layer 2")
    second = registry.find_or_create_layer("Layer 2")

    assert first == second
    assert _names(registry) == ["Background", "Layer 2"]
    assert registry.active_layer_id == DEFAULT_LAYER_ID


def test_find_or_create_layer_matches_normalized_names_and_ids():
    _, registry = _registry()
    sky = registry.find_or_create_layer("Sky")

    assert registry.find_or_create_layer("layer   sky") == sky
    assert registry.find_or_create_layer("SKY") == sky
    assert registry.find_or_create_layer(sky) == sky
    assert registry.find_or_create_layer("background") == DEFAULT_LAYER_ID
    assert registry.find_or_create_layer("") == DEFAULT_LAYER_ID


def test_created_target_layer_raises_auto_name_counter():
    _, registry = _registry()
    registry.find_or_create_layer("Layer 4")
    registry.add_layer()
    assert _names(registry)[-1] == "Layer 5"


def test_layers_persist_in_page_meta_and_reload_from_snapshot():
    store, registry = _registry()
    layer = registry.add_layer()
    registry.toggle_lock(layer)
    _draw(store, layer)
    snapshot = store.get_snapshot()

    restored_store = CanvasStore()
    restored = LayerRegistry(restored_store)
    restored_store.load_snapshot(snapshot)

    assert [item.to_dict() for item in restored.layers] == [item.to_dict() for item in registry.layers]
    assert restored.active_layer_id == layer
    restored.add_layer()
    assert _names(restored)[-1] == "Layer 2"


def test_reconcile_retags_orphaned_shapes_on_load():
    store, registry = _registry()
    snapshot = {
        "shapes": [
            {"id": "shape:a", "meta": {LAYER_META_KEY: "gone"}},
            {"id": "shape:b", "isLocked": True},
        ],
        "page": {"meta": {}},
    }

    store.load_snapshot(snapshot)

    assert store.get_shape("shape:a").layer_id == DEFAULT_LAYER_ID
    assert store.get_shape("shape:b").layer_id == DEFAULT_LAYER_ID
    assert store.get_shape("shape:b").is_locked
    assert registry.shape_index()[DEFAULT_LAYER_ID] == ["shape:a", "shape:b"]


_operations = st.lists(
    st.one_of(
        st.tuples(st.just("add"), st.integers(0, 10)),
        st.tuples(st.just("delete"), st.integers(0, 10)),
        st.tuples(st.just("draw"), st.integers(0, 10)),
        st.tuples(st.just("assign"), st.integers(0, 10)),
        st.tuples(st.just("visibility"), st.integers(0, 10)),
        st.tuples(st.just("lock"), st.integers(0, 10)),
        st.tuples(st.just("move_up"), st.integers(0, 10)),
        st.tuples(st.just("move_down"), st.integers(0, 10)),
        st.tuples(st.just("find"), st.integers(0, 4)),
    ),
    max_size=40,
)


@pytest.mark.property
@given(operations=_operations)
@settings(max_examples=75, deadline=None)
def test_registry_invariants_hold_for_any_operation_sequence(operations):
    store, registry = _registry()

    for op, pick in operations:
        layer_ids = [layer.id for layer in registry.layers]
        layer_id = layer_ids[pick % len(layer_ids)]
        if op == "add":
            registry.add_layer()
        elif op == "delete":
            registry.delete_layer(layer_id)
        elif op == "draw":
            _draw(store, layer_id)
        elif op == "assign" and store.shape_ids():
            shape_ids = store.shape_ids()
            registry.assign_shape_to_layer(shape_ids[pick % len(shape_ids)], layer_id)
        elif op == "visibility":
            registry.toggle_visibility(layer_id)
        elif op == "lock":
            registry.toggle_lock(layer_id)
        elif op == "move_up":
            registry.move_layer(layer_id, "up")
        elif op == "move_down":
            registry.move_layer(layer_id, "down")
        elif op == "find":
            registry.find_or_create_layer(f"Layer {pick}")

    layers = registry.layers
    assert len(layers) >= 1
    assert registry.get_layer(registry.active_layer_id) is not None

    index = registry.shape_index()
    indexed = [shape_id for ids in index.values() for shape_id in ids]
    assert len(indexed) == len(set(indexed))
    assert sorted(indexed) == sorted(store.shape_ids())

    for layer in layers:
        for shape_id in index[layer.id]:
            assert store.get_shape(shape_id).layer_id == layer.id

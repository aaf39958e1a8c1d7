"""Tests for the hierarchical memory store."""

import pytest

from engram.errors import CapacityError, DimensionError, NotFoundError, StructuralError
from engram.index import IndexConfig
from engram.models import (
    ContentType,
    DecayTier,
    Delta,
    DeltaOperation,
    QualityInfo,
    TemporalInfo,
    create_link,
    create_node,
)
from engram.store import MemoryStore
from engram.temporal import DecayConfig


@pytest.fixture
def family(store):
    """root -> (a -> (a1, a2), b)"""
    root_id = store.add(_node(store, "root"))
    a = store.add_child(root_id, "a")
    b = store.add_child(root_id, "b")
    a1 = store.add_child(a, "a1")
    a2 = store.add_child(a, "a2")
    return {"root": root_id, "a": a, "b": b, "a1": a1, "a2": a2}


def _node(store, content, **kwargs):
    return create_node(content, ids=store.ids, now=store.clock(), **kwargs)


def _assert_tree_consistent(store):
    for node in store.all():
        if node.parent_id is None:
            assert node.depth == 0
            assert node.path == f"/{node.id}"
            assert node in store.roots()
        else:
            parent = store.get(node.parent_id)
            assert parent is not None
            assert node.depth == parent.depth + 1
            assert node.path == f"{parent.path}/{node.id}"
            assert parent.children.count(node.id) == 1
        for cid in node.children:
            assert store.get(cid).parent_id == node.id


class TestAdd:
    """Test adding nodes."""

    def test_add_root(self, store, make_node):
        node = make_node(store, "hello")
        node_id = store.add(node)

        assert node_id == node.id
        assert store.get(node_id) is node
        assert node.depth == 0
        assert node.path == f"/{node_id}"
        assert [n.id for n in store.roots()] == [node_id]
        assert len(store) == 1

    def test_add_derives_depth_and_path_from_parent(self, store, make_node):
        root = store.add(make_node(store, "root"))
        child = make_node(store, "child", parent_id=root)
        child.depth = 7
        child.path = "/bogus"
        store.add(child)

        assert child.depth == 1
        assert child.path == f"/{root}/{child.id}"
        assert store.get(root).children == [child.id]

    def test_add_missing_parent_raises(self, store, make_node):
        node = make_node(store, "orphan", parent_id="nope")
        with pytest.raises(NotFoundError):
            store.add(node)
        assert len(store) == 0
        assert len(store.deltas) == 0

    def test_add_duplicate_id_raises(self, store, make_node):
        node = make_node(store)
        store.add(node)
        with pytest.raises(StructuralError):
            store.add(node.copy())

    def test_add_node_with_children_raises(self, store, make_node):
        node = make_node(store)
        node.children = ["x"]
        with pytest.raises(StructuralError):
            store.add(node)

    def test_add_child_defaults(self, store, make_node):
        root = store.add(make_node(store, "root"))
        child_id = store.add_child(root, "abcdefgh", tags=["t"], embedding=[1, 0, 0])
        child = store.get(child_id)

        assert child.parent_id == root
        assert child.content.type == ContentType.TEXT
        assert child.content.tokens == 2
        assert child.metadata.tags == ["t"]
        assert child.quality.score == 0.5
        assert child.has_embedding

    def test_add_child_overrides_fields(self, store, make_node):
        root = store.add(make_node(store, "root"))
        child_id = store.add_child(root, "x", quality=QualityInfo(score=0.9), embedding_model="m")
        assert store.get(child_id).quality.score == 0.9
        assert store.get(child_id).embedding_model == "m"

    def test_add_child_rejects_structural_fields(self, store, make_node):
        root = store.add(make_node(store, "root"))
        with pytest.raises(StructuralError):
            store.add_child(root, "x", depth=4)

    def test_add_child_missing_parent(self, store):
        with pytest.raises(NotFoundError):
            store.add_child("missing", "x")


class TestNavigation:
    """Test tree navigation."""

    def test_parent_and_children(self, store, family):
        assert store.parent(family["a"]).id == family["root"]
        assert store.parent(family["root"]) is None
        assert [n.id for n in store.children(family["a"])] == [family["a1"], family["a2"]]

    def test_siblings(self, store, family):
        assert [n.id for n in store.siblings(family["a"])] == [family["b"]]
        assert store.siblings(family["root"]) == []

    def test_ancestors_parent_first(self, store, family):
        assert [n.id for n in store.ancestors(family["a1"])] == [family["a"], family["root"]]
        assert store.ancestors(family["root"]) == []

    def test_descendants_breadth_first(self, store, family):
        ids = [n.id for n in store.descendants(family["root"])]
        assert ids == [family["a"], family["b"], family["a1"], family["a2"]]

    def test_find_by_path_and_depth(self, store, family):
        a1 = store.get(family["a1"])
        assert store.find_by_path(a1.path) is a1
        assert store.find_by_path("/missing") is None
        assert {n.id for n in store.find_by_depth(2)} == {family["a1"], family["a2"]}

    def test_find_by_tag(self, store, make_node):
        store.add(make_node(store, "x", tags=["keep"]))
        store.add(make_node(store, "y"))
        assert [n.content.data for n in store.find_by_tag("keep")] == ["x"]

    def test_get_missing_returns_none(self, store):
        assert store.get("missing") is None

    def test_navigation_on_missing_id_raises(self, store):
        with pytest.raises(NotFoundError):
            store.children("missing")
        with pytest.raises(NotFoundError):
            store.ancestors("missing")

    def test_is_descendant(self, store, family):
        assert store.is_descendant(family["a1"], family["root"])
        assert not store.is_descendant(family["root"], family["a1"])
        assert not store.is_descendant(family["a"], family["a"])


class TestUpdate:
    """Test partial updates."""

    def test_update_merges_content(self, store, clock, make_node):
        node_id = store.add(make_node(store, "old"))
        clock.advance(500)
        node = store.update(node_id, {"content": {"data": "new"}})

        assert node.content.data == "new"
        assert node.content.type == ContentType.TEXT
        assert node.temporal.modified == clock.now

    def test_update_forces_modified_time(self, store, clock, make_node):
        node_id = store.add(make_node(store))
        clock.advance(10)
        node = store.update(node_id, {"temporal": {"modified": 1, "expires": 99}})
        assert node.temporal.modified == clock.now
        assert node.temporal.expires == 99

    def test_update_rejects_structural_fields(self, store, family):
        before = store.get(family["a"]).to_dict()
        for field_name, value in [("parent_id", None), ("depth", 3), ("path", "/x"), ("children", []), ("id", "z")]:
            with pytest.raises(StructuralError):
                store.update(family["a"], {field_name: value})
        assert store.get(family["a"]).to_dict() == before

    def test_update_rejects_unknown_fields(self, store, make_node):
        node_id = store.add(make_node(store))
        with pytest.raises(StructuralError):
            store.update(node_id, {"colour": "red"})

    def test_update_missing_node(self, store):
        with pytest.raises(NotFoundError):
            store.update("missing", {"quality": {"score": 1.0}})

    def test_update_embedding_reindexes(self, store, make_node):
        a = store.add(make_node(store, "a", embedding=[1, 0, 0]))
        b = store.add(make_node(store, "b", embedding=[0, 1, 0]))

        store.update(b, {"embedding": [1, 0, 0.01]})
        store.update(a, {"embedding": [0, 0, 1]})

        top = store.nearest([1, 0, 0], k=1)
        assert top[0][0].id == b

    def test_update_records_delta(self, store, make_node):
        node_id = store.add(make_node(store))
        store.update(node_id, {"quality": {"score": 0.9}})
        delta = list(store.deltas)[-1]

        assert delta.operation == DeltaOperation.UPDATE
        assert delta.node_id == node_id
        assert delta.updates["quality"].score == 0.9
        assert "temporal" in delta.updates


class TestDelete:
    """Test deletion with and without cascade."""

    def test_delete_leaf(self, store, family):
        removed = store.delete(family["a1"])
        assert removed == [family["a1"]]
        assert family["a1"] not in store
        assert store.get(family["a"]).children == [family["a2"]]
        _assert_tree_consistent(store)

    def test_delete_promotes_children_into_parent_slot(self, store, family):
        store.delete(family["a"])

        root = store.get(family["root"])
        assert root.children == [family["a1"], family["a2"], family["b"]]
        a1 = store.get(family["a1"])
        assert a1.parent_id == family["root"]
        assert a1.depth == 1
        assert a1.path == f"/{family['root']}/{family['a1']}"
        _assert_tree_consistent(store)

    def test_delete_root_promotes_children_to_roots(self, store, family):
        store.delete(family["root"])
        assert {n.id for n in store.roots()} == {family["a"], family["b"]}
        assert store.get(family["a1"]).path == f"/{family['a']}/{family['a1']}"
        _assert_tree_consistent(store)

    def test_cascade_removes_subtree_deepest_first(self, store, family):
        removed = store.delete(family["a"], cascade=True)

        assert removed[-1] == family["a"]
        assert set(removed) == {family["a"], family["a1"], family["a2"]}
        assert len(store) == 2
        assert store.get(family["root"]).children == [family["b"]]

        delete_deltas = [d for d in store.deltas if d.operation == DeltaOperation.DELETE]
        assert [d.node_id for d in delete_deltas] == removed

    def test_delete_removes_from_index(self, store, make_node):
        node_id = store.add(make_node(store, embedding=[1, 0, 0]))
        store.delete(node_id)
        assert node_id not in store.index
        assert store.search([1, 0, 0], min_score=0.0) == []

    def test_delete_missing(self, store):
        with pytest.raises(NotFoundError):
            store.delete("missing")


class TestMove:
    """Test reparenting."""

    def test_move_refreshes_subtree(self, store, family):
        store.move(family["a"], family["b"])

        a = store.get(family["a"])
        b = store.get(family["b"])
        assert a.depth == 2
        assert a.path == f"{b.path}/{a.id}"
        assert store.get(family["a1"]).depth == 3
        assert store.get(family["root"]).children == [family["b"]]
        assert b.children == [family["a"]]
        _assert_tree_consistent(store)

    def test_move_to_root(self, store, family):
        store.move(family["a"], None)
        assert family["a"] in [n.id for n in store.roots()]
        assert store.get(family["a2"]).path == f"/{family['a']}/{family['a2']}"
        _assert_tree_consistent(store)

    def test_move_under_own_descendant_rejected(self, store, family):
        before = {n.id: n.to_dict() for n in store.all()}
        with pytest.raises(StructuralError):
            store.move(family["a"], family["a1"])
        with pytest.raises(StructuralError):
            store.move(family["a"], family["a"])
        assert {n.id: n.to_dict() for n in store.all()} == before

    def test_move_missing_parent(self, store, family):
        with pytest.raises(NotFoundError):
            store.move(family["a"], "missing")

    def test_move_logged_as_update(self, store, family):
        store.move(family["a"], family["b"])
        delta = list(store.deltas)[-1]
        assert delta.operation == DeltaOperation.UPDATE
        assert delta.updates["parent_id"] == family["b"]

    def test_deep_chain_move_and_delete(self, store, make_node):
        """Depth and path propagate through chains deeper than the recursion limit."""
        levels = 1500
        top = store.add(make_node(store, "top"))
        leaf = top
        for i in range(levels):
            leaf = store.add_child(leaf, f"level {i}")
        assert store.get(leaf).depth == levels

        holder = store.add(make_node(store, "holder"))
        store.move(top, holder)
        assert store.get(leaf).depth == levels + 1
        assert store.get(leaf).path.startswith(f"/{holder}/{top}/")

        store.delete(holder)
        assert store.get(leaf).depth == levels
        assert store.get(leaf).path.startswith(f"/{top}/")
        assert store.get(top).is_root


class TestLoad:
    """Test bulk loading."""

    def test_load_rebuilds_children_and_paths(self, store, make_node):
        source = MemoryStore()
        root = source.add(_node(source, "root"))
        child = source.add_child(root, "child")
        grandchild = source.add_child(child, "grandchild")
        nodes = [n.copy() for n in source.all()]
        for n in nodes:
            n.children = []
            n.path = ""
            n.depth = 0

        count = store.load(reversed(nodes))

        assert count == 3
        assert store.get(root).children == [child]
        assert store.get(grandchild).depth == 2
        assert store.get(grandchild).path == f"/{root}/{child}/{grandchild}"
        assert len(store.deltas) == 0
        _assert_tree_consistent(store)

    def test_load_keeps_stored_child_order(self, store, make_node):
        root = make_node(store, "root")
        c1 = make_node(store, "c1", parent_id=root.id)
        c2 = make_node(store, "c2", parent_id=root.id)
        root.children = [c2.id, c1.id]

        store.load([c1, root, c2])
        assert store.get(root.id).children == [c2.id, c1.id]

    def test_load_cycle_rejected(self, store, make_node):
        a = make_node(store, "a")
        b = make_node(store, "b", parent_id=a.id)
        a.parent_id = b.id
        with pytest.raises(StructuralError):
            store.load([a, b])
        assert len(store) == 0

    def test_load_missing_parent(self, store, make_node):
        with pytest.raises(NotFoundError):
            store.load([make_node(store, "x", parent_id="ghost")])

    def test_load_indexes_embeddings(self, store, make_node):
        store.load([make_node(store, "x", embedding=[0, 1, 0])])
        assert store.index.size() == 1

    def test_constructor_loads_nodes(self, make_node):
        template = MemoryStore()
        nodes = [_node(template, "a"), _node(template, "b")]
        store = MemoryStore(nodes=nodes)
        assert len(store) == 2


class TestCapacity:
    """Test that a full index leaves the store untouched."""

    def test_add_fails_cleanly_when_index_full(self, clock, make_node):
        store = MemoryStore(index_config=IndexConfig(dimensions=3, max_elements=1), clock=clock)
        store.add(make_node(store, "first", embedding=[1, 0, 0]))
        second = make_node(store, "second", embedding=[0, 1, 0])

        with pytest.raises(CapacityError):
            store.add(second)

        assert second.id not in store
        assert len(store.deltas) == 1
        assert len(store.roots()) == 1

    def test_rebuild_reclaims_tombstones(self, clock, make_node):
        store = MemoryStore(index_config=IndexConfig(dimensions=3, max_elements=2), clock=clock)
        a = store.add(make_node(store, "a", embedding=[1, 0, 0]))
        store.add(make_node(store, "b", embedding=[0, 1, 0]))
        store.delete(a)

        with pytest.raises(CapacityError):
            store.add(make_node(store, "c", embedding=[0, 0, 1]))

        stats = store.rebuild_index()
        assert stats["tombstones"] == 0
        store.add(make_node(store, "c", embedding=[0, 0, 1]))
        assert store.index.size() == 2


class TestEntitiesAndLinks:
    """Test opaque entity and link payloads."""

    def test_links(self, store, make_node):
        a = store.add(make_node(store, "a"))
        b = store.add(make_node(store, "b"))
        link = create_link(a, b, "references")
        store.add_link(link)

        assert store.links_for(a) == [link]
        with pytest.raises(StructuralError):
            store.add_link(link)

        store.remove_link(link.id)
        assert store.links == []
        ops = [d.operation for d in store.deltas]
        assert ops[-2:] == [DeltaOperation.LINK, DeltaOperation.UNLINK]

    def test_remove_missing_link(self, store):
        with pytest.raises(NotFoundError):
            store.remove_link("missing")

    def test_entities_for(self, store, make_node):
        from engram.models import Entity, EntityMention

        a = store.add(make_node(store, "Ada wrote this"))
        entity = Entity(id="e1", type="person", name="Ada", mentions=[EntityMention(a, (0, 3), 0.9)])
        store.add_entity(entity)

        assert store.entities_for(a) == [entity]
        assert store.get_entity("e1") is entity


class TestReplay:
    """Test replaying one store's deltas into another."""

    def test_replica_matches_source(self, store, family, make_node):
        store.update(family["a1"], {"content": {"data": "edited"}})
        store.move(family["a2"], family["b"])
        store.delete(family["a"], cascade=True)
        store.add_child(family["b"], "late", embedding=[0, 0, 1])
        link = create_link(family["root"], family["b"])
        store.add_link(link)

        replica = MemoryStore()
        applied = replica.apply_all(store.deltas.since(0))

        assert applied == len(store.deltas)
        assert {n.id: n.to_dict() for n in replica.all()} == {n.id: n.to_dict() for n in store.all()}
        assert [x.id for x in replica.links] == [link.id]
        assert replica.index.size() == 1

    def test_incremental_sync_from_checkpoint(self, store, make_node):
        replica = MemoryStore()
        root = store.add(make_node(store, "root"))
        replica.apply_all(store.deltas.since(0))
        position = store.deltas.checkpoint()

        store.add_child(root, "child")
        replica.apply_all(store.deltas.since(position))

        assert len(replica) == 2
        assert len(replica.get(root).children) == 1

    def _update_delta(self, store, node_id, updates):
        return Delta(
            id=store.ids.next(),
            timestamp=store.clock(),
            operation=DeltaOperation.UPDATE,
            node_id=node_id,
            updates=updates,
        )

    def test_failed_update_leaves_node_in_place(self, store, make_node):
        a = store.add(make_node(store, "a", embedding=[1, 0, 0]))
        b = store.add(make_node(store, "b", embedding=[0, 1, 0]))
        before = {n.id: n.to_dict() for n in store.all()}
        logged = len(store.deltas)

        bad_vector = self._update_delta(store, b, {"parent_id": a, "embedding": [1.0, 0.0]})
        with pytest.raises(DimensionError):
            store.apply(bad_vector)
        unknown_field = self._update_delta(store, b, {"parent_id": a, "colour": "red"})
        with pytest.raises(StructuralError):
            store.apply(unknown_field)

        assert {n.id: n.to_dict() for n in store.all()} == before
        assert store.get(b).parent_id is None
        assert len(store.deltas) == logged

    def test_failed_move_leaves_fields_untouched(self, store, make_node):
        a = store.add(make_node(store, "a"))
        child = store.add_child(a, "child")

        missing_parent = self._update_delta(store, a, {"parent_id": "missing", "content": {"data": "new"}})
        with pytest.raises(NotFoundError):
            store.apply(missing_parent)
        cycle = self._update_delta(store, a, {"parent_id": child, "content": {"data": "new"}})
        with pytest.raises(StructuralError):
            store.apply(cycle)

        assert store.get(a).content.data == "a"
        assert store.get(child).parent_id == a

    def test_replayed_move_with_fields(self, store, make_node):
        a = store.add(make_node(store, "a"))
        b = store.add(make_node(store, "b"))
        store.apply(self._update_delta(store, b, {"parent_id": a, "content": {"data": "moved"}}))

        assert store.get(b).parent_id == a
        assert store.get(b).content.data == "moved"
        assert store.get(a).children == [b]


class TestTemporalHousekeeping:
    """Test access tracking, decay tiers and expiry."""

    def test_touch_updates_access(self, store, clock, make_node):
        node_id = store.add(make_node(store))
        clock.advance_days(10)
        node = store.touch(node_id)
        assert node.temporal.accessed == clock.now
        assert node.temporal.decay_tier == DecayTier.HOT

    def test_refresh_decay_tiers(self, store, clock, make_node):
        node_id = store.add(make_node(store))
        clock.advance_days(10)

        assert store.refresh_decay_tiers(DecayConfig()) == 1
        assert store.get(node_id).temporal.decay_tier == DecayTier.WARM
        assert store.refresh_decay_tiers(DecayConfig()) == 0

    def test_purge_expired(self, store, clock, make_node):
        keep = store.add(make_node(store, "keep"))
        node = make_node(store, "gone")
        node.temporal = TemporalInfo(created=clock.now, modified=clock.now, accessed=clock.now, expires=clock.now + 5)
        gone = store.add(node)
        store.add_child(gone, "child of gone")

        clock.advance(10)
        assert [n.id for n in store.expired()] == [gone]
        assert store.purge_expired() == 2
        assert [n.id for n in store.all()] == [keep]

    def test_refresh_with_delete_on_expire(self, store, clock, make_node):
        node = make_node(store)
        node.temporal.expires = clock.now
        store.add(node)
        clock.advance(1)
        store.refresh_decay_tiers(DecayConfig(delete_on_expire=True))
        assert len(store) == 0

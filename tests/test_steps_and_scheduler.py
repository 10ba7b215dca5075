import pytest

from patchwright.analysis.scheduler import (
    break_cycles,
    find_cycles,
    find_missing_dependencies,
    layer_sorted,
    order_steps,
)
from patchwright.analysis.steps import extract_features, generate_steps, infer_target_path, resolve_dependencies
from patchwright.domain import Step
from patchwright.errors import PlanValidationError


def _step(step_id, layer="general", deps=(), feature="f", action="create"):
    return Step(
        id=step_id,
        feature_id=feature,
        action=action,
        target=f"src/{step_id}.js",
        layer=layer,
        dependencies=tuple(deps),
    )


def test_extract_features_prefers_features_then_pages_then_description():
    assert extract_features({"features": [{"id": "a"}], "pages": [{"name": "p"}]}) == [{"id": "a"}]

    pages = extract_features({"pages": [{"name": "home", "components": ["Hero"]}]})
    assert pages == [
        {"id": "page_home", "name": "home", "type": "page", "components": ["Hero"], "routes": []}
    ]

    single = extract_features({"name": "Todo", "description": "A todo app"})
    assert single[0]["id"] == "main_feature"
    assert single[0]["name"] == "Todo"

    assert extract_features({}) == []


def test_generate_steps_for_models_routes_and_components():
    feature = {"id": "users", "models": ["User"], "routes": ["users"], "components": ["UserList"]}

    steps = generate_steps(feature)

    assert [s.id for s in steps] == ["users_model_0", "users_route_1", "users_comp_2"]
    assert [s.layer for s in steps] == ["database", "backend", "frontend"]
    assert [s.target for s in steps] == [
        "src/models/User.js",
        "src/routes/users.js",
        "src/components/UserList.jsx",
    ]
    assert steps[0].description == "Create User model"
    assert all(s.action == "create" for s in steps)


def test_generate_steps_falls_back_to_single_general_step():
    steps = generate_steps({"id": "search", "name": "search", "description": "Add search"})

    assert len(steps) == 1
    assert steps[0].id == "search_impl"
    assert steps[0].layer == "general"
    assert steps[0].estimated_tokens == 3000
    assert steps[0].target == "src/search.js"


def test_generate_steps_from_explicit_changes():
    feature = {
        "id": "auth",
        "changes": [
            {"target": "src/routes/login.js", "action": "modify", "layer": "backend"},
            {"target": "src/old.js", "action": "delete", "dependencies": ["auth_change_0"]},
        ],
    }

    steps = generate_steps(feature)

    assert [s.id for s in steps] == ["auth_change_0", "auth_change_1"]
    assert steps[0].action == "modify"
    assert steps[1].dependencies == ("auth_change_0",)


def test_generate_steps_rejects_unknown_action():
    with pytest.raises(PlanValidationError):
        generate_steps({"id": "x", "changes": [{"target": "a.js", "action": "rename"}]})


def test_infer_target_path_uses_frontend_framework():
    analysis = {"patterns": {"frameworks": {"frontend": [{"name": "Vue"}]}}}

    assert infer_target_path({"name": "Cart", "type": "component"}, analysis) == "src/components/Cart.vue"
    assert infer_target_path({"name": "orders", "type": "api"}, analysis) == "src/routes/orders.js"
    assert infer_target_path({"name": "Cart", "type": "component"}) == "src/Cart.js"


def test_resolve_dependencies_adds_implicit_layer_edges():
    steps = [
        _step("db", "database"),
        _step("api", "backend"),
        _step("ui", "frontend", deps=["api"]),
        _step("other_db", "database", feature="g"),
    ]

    resolved = {s.id: s for s in resolve_dependencies(steps)}

    assert resolved["db"].dependencies == ()
    assert resolved["api"].dependencies == ("db",)
    # Declared first, duplicates dropped, other features ignored.
    assert resolved["ui"].dependencies == ("api", "db")


def test_resolve_dependencies_returns_new_step_objects():
    original = _step("api", "backend")
    db = _step("db", "database")

    resolved = resolve_dependencies([db, original])

    assert original.dependencies == ()
    assert resolved[0] is db
    assert resolved[1] is not original


def test_order_steps_db_backend_frontend():
    steps = resolve_dependencies(
        [_step("ui", "frontend"), _step("api", "backend"), _step("db", "database")]
    )

    ordered = order_steps(steps)

    assert [s.id for s in ordered] == ["db", "api", "ui"]


def test_order_steps_places_dependencies_first_across_layers():
    steps = [_step("db", "database", deps=["cfg"]), _step("cfg", "general")]

    ordered = [s.id for s in order_steps(steps)]

    assert ordered == ["cfg", "db"]


def test_order_steps_keeps_every_step_with_cycle():
    steps = [_step("a", deps=["b"]), _step("b", deps=["c"]), _step("c", deps=["a"])]

    ordered = order_steps(steps)

    assert sorted(s.id for s in ordered) == ["a", "b", "c"]
    assert len(ordered) == 3
    # Inputs keep their declared dependencies.
    assert steps[2].dependencies == ("a",)


def test_break_cycles_reports_dropped_edge():
    steps = [_step("a", deps=["b"]), _step("b", deps=["c"]), _step("c", deps=["a"])]

    graph, dropped = break_cycles(steps)

    assert dropped == [("c", "a")]
    assert graph == {"a": ["b"], "b": ["c"], "c": []}


def test_order_steps_rejects_duplicate_ids():
    with pytest.raises(ValueError):
        order_steps([_step("a"), _step("a")])


def test_layer_sorted_is_stable():
    steps = [_step("g1"), _step("d1", "database"), _step("g2"), _step("t", "test")]

    assert [s.id for s in layer_sorted(steps)] == ["d1", "g1", "g2", "t"]


def test_find_cycles_reports_three_cycle():
    steps = [_step("a", deps=["b"]), _step("b", deps=["c"]), _step("c", deps=["a"])]

    cycles = find_cycles(steps)

    assert "a -> b -> c -> a" in cycles
    assert len(cycles) == 3


def test_find_missing_dependencies():
    steps = [_step("a", deps=["ghost"]), _step("b", deps=["a"])]

    assert find_missing_dependencies(steps) == [("a", "ghost")]

from grafana_query_mcp.dependencies import extract_dependencies, plan_cascade, resolution_order
from grafana_query_mcp.models import Variable


def _var(id, name, query=""):
    return Variable(id=id, name=name, query=query, dependsOn=extract_dependencies(query))


def test_extract_dependencies():
    assert extract_dependencies('up{region="${region}", env="$env", x="${region}"}') == ["region", "env"]
    assert extract_dependencies("up") == []


def test_chain_cascade_in_order():
    variables = [
        _var(1, "region", "label_values(region)"),
        _var(2, "cluster", 'label_values(up{region="${region}"}, cluster)'),
        _var(3, "node", 'label_values(up{cluster="${cluster}"}, node)'),
    ]
    assert plan_cascade(variables, 1) == [2, 3]
    assert plan_cascade(variables, 2) == [3]
    assert plan_cascade(variables, 3) == []


def test_diamond_visits_each_variable_once():
    # d depends on b and c, both of which depend on a
    variables = [
        _var(4, "d", "${b} ${c}"),
        _var(1, "a"),
        _var(2, "b", "${a}"),
        _var(3, "c", "${a}"),
    ]
    plan = plan_cascade(variables, 1)
    assert sorted(plan) == [2, 3, 4]
    assert plan.index(4) > plan.index(2)
    assert plan.index(4) > plan.index(3)


def test_cycle_terminates():
    variables = [_var(1, "a", "${b}"), _var(2, "b", "${a}")]
    assert plan_cascade(variables, 1) == [2]
    assert plan_cascade(variables, 2) == [1]


def test_self_reference_terminates():
    variables = [_var(1, "a", "${a}")]
    assert plan_cascade(variables, 1) == []


def test_unknown_variable():
    assert plan_cascade([_var(1, "a")], 99) == []


def test_resolution_order_upstream_first():
    variables = [
        _var(3, "node", "${cluster}"),
        _var(2, "cluster", "${region}"),
        _var(1, "region"),
        _var(5, "other"),
    ]
    order = resolution_order(variables)
    assert order.index(1) < order.index(2) < order.index(3)
    assert sorted(order) == [1, 2, 3, 5]


def test_resolution_order_breaks_cycles():
    variables = [_var(1, "a", "${b}"), _var(2, "b", "${a}"), _var(3, "c", "${a}")]
    order = resolution_order(variables)
    assert order == [1, 2, 3]

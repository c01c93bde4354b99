"""Tests for spec parsing, the dependency graph and the ready set."""

import json

import pytest

from worktree_orchestrator.errors import (
    CircularDependencyError, SpecFormatError, SpecParseError,
    UnknownDependencyError,
)
from worktree_orchestrator.models import WorkstreamSpec
from worktree_orchestrator.spec_generator import (
    SpecGenerator, build_graph, normalize_spec, parse_specs,
    ready_workstreams,
)


def spec(ws_id, *deps):
    return WorkstreamSpec(id=ws_id, name=ws_id.upper(),
                          description=f"Build {ws_id}",
                          dependencies=list(deps))


# -----------------------------------------------------------------------------
# Parsing
# -----------------------------------------------------------------------------


class TestParseSpecs:

    def test_plain_array(self):
        raw = json.dumps([
            {'id': 'api', 'name': 'API', 'description': 'REST endpoints',
             'estimated_complexity': 'high'},
            {'id': 'ui', 'name': 'UI', 'description': 'Frontend',
             'dependencies': ['api']},
        ])
        specs = parse_specs(raw)
        assert [s.id for s in specs] == ['api', 'ui']
        assert specs[0].estimated_complexity == 'high'
        assert specs[1].dependencies == ['api']

    def test_fenced_block_inside_prose(self):
        raw = ("Here is the plan:\n```json\n"
               '[{"id": "x", "description": "do x"}]\n```\nGood luck!')
        specs = parse_specs(raw)
        assert specs[0].id == 'x'

    def test_array_embedded_in_text(self):
        raw = 'Plan: [{"id": "x", "description": "do x"}] -- end'
        assert parse_specs(raw)[0].id == 'x'

    def test_defaults_are_filled_in(self):
        specs = parse_specs('[{"description": "first"}, '
                            '{"description": "second"}]')
        assert specs[0].id == 'workstream-1'
        assert specs[1].name == 'Workstream 2'
        assert specs[0].estimated_complexity == 'medium'
        assert specs[0].dependencies == []
        assert specs[0].timeout_minutes == 60
        assert specs[0].recommended_agent == 'coder'

    def test_invalid_json_raises_format_error(self):
        with pytest.raises(SpecFormatError, match='Failed to parse'):
            parse_specs('this is not json')

    def test_object_instead_of_array(self):
        with pytest.raises(SpecFormatError, match='expected a JSON array'):
            parse_specs('{"id": "x", "description": "y"}')

    def test_missing_description_is_rejected(self):
        with pytest.raises(SpecParseError, match='description is required'):
            parse_specs('[{"id": "x"}]')

    def test_invalid_complexity_is_rejected(self):
        with pytest.raises(SpecParseError, match='estimated_complexity'):
            parse_specs('[{"id": "x", "description": "y", '
                        '"estimated_complexity": "huge"}]')

    def test_duplicate_ids_are_rejected(self):
        with pytest.raises(SpecParseError, match='Duplicate workstream id'):
            parse_specs('[{"id": "x", "description": "1"}, '
                        '{"id": "x", "description": "2"}]')

    def test_normalize_rejects_non_object(self):
        with pytest.raises(SpecParseError, match='expected an object'):
            normalize_spec('oops', 0)

    @pytest.mark.parametrize('bad_id', ['api/auth', '../up', 'has space',
                                        '-leading', 'refs.lock', 'a..b'])
    def test_unsafe_ids_are_rejected(self, bad_id):
        with pytest.raises(SpecParseError, match='Invalid workstream id'):
            parse_specs(json.dumps([{'id': bad_id, 'description': 'x'}]))

    def test_numeric_ids_and_dependencies_become_strings(self):
        specs = parse_specs('[{"id": 1, "description": "first"}, '
                            '{"id": 2, "description": "second", '
                            '"dependencies": [1]}]')
        assert [s.id for s in specs] == ['1', '2']
        assert specs[1].dependencies == ['1']
        assert build_graph(specs).topological_order == ['1', '2']


# -----------------------------------------------------------------------------
# Graph
# -----------------------------------------------------------------------------


class TestBuildGraph:

    def test_topological_order_respects_dependencies(self):
        graph = build_graph([spec('c', 'a', 'b'), spec('a'), spec('b', 'a')])
        order = graph.topological_order
        assert sorted(order) == ['a', 'b', 'c']
        assert order.index('a') < order.index('b') < order.index('c')

    def test_roots_and_dependents(self, abc_specs):
        graph = build_graph(abc_specs)
        assert graph.roots == ['a', 'b']
        assert graph.dependents['a'] == {'c'}
        assert graph.dependents['b'] == set()
        assert graph.dependencies['c'] == {'a'}

    def test_unknown_dependency(self):
        with pytest.raises(UnknownDependencyError) as exc_info:
            build_graph([spec('a', 'ghost')])
        assert exc_info.value.spec_id == 'a'
        assert exc_info.value.missing_id == 'ghost'
        assert 'unknown dependency: ghost' in str(exc_info.value)

    def test_two_node_cycle(self):
        with pytest.raises(CircularDependencyError, match='Circular'):
            build_graph([spec('a', 'b'), spec('b', 'a')])

    def test_self_dependency(self):
        with pytest.raises(CircularDependencyError):
            build_graph([spec('a', 'a')])

    def test_longer_cycle_behind_valid_root(self):
        with pytest.raises(CircularDependencyError):
            build_graph([spec('root'), spec('x', 'root', 'z'),
                         spec('y', 'x'), spec('z', 'y')])

    def test_ids_are_checked_for_direct_specs(self):
        with pytest.raises(SpecParseError, match='Invalid workstream id'):
            build_graph([spec('api/auth')])

    def test_empty_set(self):
        graph = build_graph([])
        assert graph.topological_order == []
        assert graph.roots == []

    def test_transitive_dependents(self):
        graph = build_graph([spec('a'), spec('b', 'a'), spec('c', 'b'),
                             spec('d')])
        assert graph.transitive_dependents('a') == {'b', 'c'}
        assert graph.transitive_dependents('d') == set()


class TestReadyWorkstreams:

    def test_roots_are_ready_first(self, abc_specs):
        assert ready_workstreams(abc_specs, []) == ['a', 'b']

    def test_dependent_becomes_ready(self, abc_specs):
        assert ready_workstreams(abc_specs, ['a']) == ['b', 'c']

    def test_completed_are_excluded(self, abc_specs):
        assert ready_workstreams(abc_specs, ['a', 'b', 'c']) == []


# -----------------------------------------------------------------------------
# Generator
# -----------------------------------------------------------------------------


class TestSpecGenerator:

    def test_prompt_includes_request_and_context(self, tmp_path):
        gen = SpecGenerator(project_root=str(tmp_path))
        prompt = gen.build_prompt('Add login', ['src/auth.py'])
        assert 'USER REQUEST: Add login' in prompt
        assert '- src/auth.py' in prompt
        assert prompt.startswith(gen.system_prompt)

    def test_generate_uses_planner(self, tmp_path):
        prompts = []

        def planner(prompt):
            prompts.append(prompt)
            return '[{"id": "one", "description": "only"}]'

        gen = SpecGenerator(planner=planner, project_root=str(tmp_path))
        specs = gen.generate_specs('Do it')
        assert [s.id for s in specs] == ['one']
        assert len(prompts) == 1

    def test_generate_repairs_unparseable_output_once(self, tmp_path):
        replies = iter(['not json at all',
                        '[{"id": "fixed", "description": "ok"}]'])
        gen = SpecGenerator(planner=lambda _: next(replies),
                            project_root=str(tmp_path))
        assert gen.generate_specs('Do it')[0].id == 'fixed'

    def test_invalid_record_is_not_repaired(self, tmp_path):
        calls = []

        def planner(prompt):
            calls.append(prompt)
            return '[{"id": "x"}]'

        gen = SpecGenerator(planner=planner, project_root=str(tmp_path))
        with pytest.raises(SpecParseError):
            gen.generate_specs('Do it')
        assert len(calls) == 1

    def test_generate_without_planner(self, tmp_path):
        with pytest.raises(SpecParseError, match='No planner'):
            SpecGenerator(project_root=str(tmp_path)).generate_specs('x')

    def test_save_and_load_specs(self, tmp_path, abc_specs):
        gen = SpecGenerator(project_root=str(tmp_path))
        path = gen.save_specs('orch-1', abc_specs)
        assert path.endswith('orch-1.json')
        loaded = gen.load_specs('orch-1')
        assert [s.id for s in loaded] == ['a', 'b', 'c']
        assert loaded[2].dependencies == ['a']

    def test_load_missing_or_corrupt_specs(self, tmp_path):
        gen = SpecGenerator(project_root=str(tmp_path))
        assert gen.load_specs('nope') is None
        gen.save_specs('bad', [])
        with open(gen._specs_path('bad'), 'w') as f:
            f.write('{broken')
        assert gen.load_specs('bad') is None

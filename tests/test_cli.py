import argparse
import json

import pytest

from backend.cli.__main__ import _run, cmd_validate, collect_source_files

PLAN = {
  'project_id': 'proj-cli',
  'tasks': [
    {'id': 'analyze', 'kind': 'analysis', 'description': 'Inventory sources', 'input_files': ['src/*.js']},
    {'id': 'port', 'kind': 'code_generation', 'description': 'Port sources', 'dependencies': ['analyze'], 'output_files': ['app/main.py']}
  ]
}


def write_plan(tmp_path, plan):
  path = tmp_path / 'plan.json'
  path.write_text(json.dumps(plan), encoding='utf-8')
  return str(path)


def test_validate_prints_levels(tmp_path, capsys):
  code = cmd_validate(write_plan(tmp_path, PLAN), as_json=True)

  out = json.loads(capsys.readouterr().out)
  assert code == 0
  assert out['order'] == ['analyze', 'port']
  assert out['levels'] == [['analyze'], ['port']]


def test_validate_reports_invalid_plan(tmp_path, capsys):
  plan = {'tasks': [{'id': 'a', 'kind': 'analysis', 'description': 'x', 'dependencies': ['ghost']}]}

  code = cmd_validate(write_plan(tmp_path, plan), as_json=False)

  assert code == 1
  assert 'INVALID_DEPENDENCY' in capsys.readouterr().err


def test_validate_missing_file(tmp_path):
  assert cmd_validate(str(tmp_path / 'absent.json'), as_json=False) == 2


def test_collect_source_files_filters_by_pattern(tmp_path):
  (tmp_path / 'src').mkdir()
  (tmp_path / 'src' / 'index.js').write_text('main()', encoding='utf-8')
  (tmp_path / 'README.md').write_text('docs', encoding='utf-8')

  collected = collect_source_files(tmp_path, ['src/*.js'])

  assert collected == {'src/index.js': 'main()'}


@pytest.mark.asyncio
async def test_dry_run_completes(tmp_path, capsys):
  (tmp_path / 'src').mkdir()
  (tmp_path / 'src' / 'index.js').write_text('main()', encoding='utf-8')
  ns = argparse.Namespace(
    plan=write_plan(tmp_path, PLAN),
    project='proj-cli',
    source_dir=str(tmp_path),
    max_concurrent=2,
    dry_run=True,
    json=False
  )

  code = await _run(ns)

  out = capsys.readouterr().out
  summary = json.loads(out[out.index('{'):])
  assert code == 0
  assert summary['status'] == 'completed'
  assert summary['progress'] == 100

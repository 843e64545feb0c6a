from __future__ import annotations

import json
from typing import Any, Iterable, Mapping

from backend.conversion.models import TaskKind


RESPONSE_CONTRACT = """Respond with a single JSON object and nothing else:
{
  "files": [{"path": "relative/path", "type": "create|update|delete", "content": "full file content"}],
  "confidence": 0.0,
  "warnings": ["..."],
  "suggestions": ["..."]
}
confidence must be a number between 0 and 1."""


_KIND_GUIDELINES = {
  TaskKind.ANALYSIS: [
    'Describe the structure of the source code and the risks of converting it.',
    'Do not emit converted files unless a file is needed to record the analysis.'
  ],
  TaskKind.CODE_GENERATION: [
    'Preserve the original functionality and logic.',
    'Follow the conventions of the target language and framework.',
    'Update imports and dependencies to match the target stack.',
    'Keep the code structure and organisation recognisable.'
  ],
  TaskKind.DEPENDENCY_UPDATE: [
    'Map each dependency to its closest equivalent in the target ecosystem.',
    'Emit the updated manifest files (package.json, requirements.txt, pyproject.toml, ...).'
  ],
  TaskKind.CONFIG_UPDATE: [
    'Translate build, lint and runtime configuration to the target stack.',
    'Drop settings that have no equivalent and mention them in warnings.'
  ],
  TaskKind.VALIDATION: [
    'Review the converted output for syntax errors and missing pieces.',
    'Report problems as warnings and fixes as suggestions.'
  ],
  TaskKind.INTEGRATION: [
    'Wire the converted modules together and update entry points.',
    'Keep public interfaces stable where possible.'
  ]
}


def _describe_stack(stack: Mapping[str, Any]) -> str:
  if not stack:
    return '- (unspecified)'
  language = stack.get('language') or 'unknown'
  framework = stack.get('framework') or 'None'
  runtime = stack.get('runtime') or 'Default'
  lines = [f'- Language: {language}', f'- Framework: {framework}', f'- Runtime: {runtime}']
  for key, value in stack.items():
    if key in {'language', 'framework', 'runtime'} or value in (None, '', [], {}):
      continue
    lines.append(f'- {key}: {value}')
  return '\n'.join(lines)


def _summarise_dependencies(dependency_outputs: Mapping[str, Any], limit: int = 4000) -> str:
  if not dependency_outputs:
    return '(no upstream task output)'
  rendered = json.dumps(dependency_outputs, indent=2, default=str)
  if len(rendered) > limit:
    rendered = rendered[:limit] + '\n... (truncated)'
  return rendered


def build_task_prompt(
  kind: TaskKind,
  description: str,
  source_stack: Mapping[str, Any],
  target_stack: Mapping[str, Any],
  source_excerpt: str,
  input_files: Iterable[str],
  output_files: Iterable[str],
  dependency_outputs: Mapping[str, Any]
) -> str:
  guidelines = '\n'.join(f'{index}. {line}' for index, line in enumerate(_KIND_GUIDELINES.get(kind, []), start=1))
  inputs = ', '.join(input_files) or '(none)'
  outputs = ', '.join(output_files) or '(decide from the task)'
  excerpt = source_excerpt.strip() or '(no source provided)'
  kind_label = kind.value if isinstance(kind, TaskKind) else str(kind)

  return f"""You are an expert code conversion assistant working on one step of a tech-stack migration.

TASK ({kind_label})
{description}

SOURCE TECH STACK
{_describe_stack(source_stack)}

TARGET TECH STACK
{_describe_stack(target_stack)}

INPUT FILES: {inputs}
EXPECTED OUTPUT FILES: {outputs}

GUIDELINES
{guidelines or '1. Complete the task as described.'}

UPSTREAM RESULTS
{_summarise_dependencies(dependency_outputs)}

SOURCE
```
{excerpt}
```

{RESPONSE_CONTRACT}
"""


def build_system_prompt() -> str:
  return 'You convert software projects between technology stacks. You always answer with valid JSON.'


#!/usr/bin/env python3
"""stepflow CLI entrypoint.

Exit codes: 0 success, 1 step or transition failure, 2 config/load error.
"""

import sys
import json
import logging
import argparse
from pathlib import Path

from stepflow.lib.config import EngineConfig, load_engine_config
from stepflow.lib.errors import StepflowError
from stepflow.lib.locking import LockTimeout, instance_lock, is_locked
from stepflow.lib.storage import LocalStorage
from stepflow.pm.models import StoryState
from stepflow.pm.state_machine import StoryStateMachine, TransitionError
from stepflow.workflow.collaborators import ExecutionServices, FileTemplateRenderer, MappingInputProvider
from stepflow.workflow.complexity import CRITERIA, AssessmentConfig, AssessmentError, assess_complexity
from stepflow.workflow.executor import WorkflowExecutor
from stepflow.workflow.loader import load_workflow
from stepflow.workflow.persistence import StateStore
from stepflow.workflow.runner import run_workflow

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def parse_inputs(pairs: list[str] | None) -> dict[str, str]:
    """Parse repeated KEY=VALUE flags."""
    answers = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ValueError(f"Expected KEY=VALUE, got '{pair}'")
        key, value = pair.split("=", 1)
        answers[key.strip()] = value
    return answers


def build_services(config: EngineConfig, answers: dict | None = None) -> ExecutionServices:
    storage = LocalStorage(config.workflows_dir)
    return ExecutionServices(
        storage=storage,
        store=StateStore(storage, config.state_dir),
        renderer=FileTemplateRenderer(storage, config.workflows_dir),
        input_provider=MappingInputProvider(answers),
        output=print,
        base_dir=config.workflows_dir,
        status_file=config.status_file,
        max_depth=config.max_depth,
    )


def _executor(args, config: EngineConfig) -> WorkflowExecutor:
    workflow = load_workflow(args.file)
    return WorkflowExecutor(workflow, build_services(config, parse_inputs(getattr(args, "input", None))))


def _print_result(result) -> int:
    if result.success:
        tag = "SKIPPED" if result.skipped else "OK"
        print(f"{tag}: {result.message}")
        if result.state is not None:
            print(f"  Step {result.state.current_step}, completed: {result.state.completed}")
        return EXIT_OK
    print(f"ERROR: {result.message}")
    return EXIT_FAILED


def cmd_validate(args, config: EngineConfig) -> int:
    workflow = load_workflow(args.file)
    print(f"OK: {workflow.name} ({len(workflow.steps)} steps)")
    return EXIT_OK


def cmd_run(args, config: EngineConfig) -> int:
    executor = _executor(args, config)
    max_steps = args.max_steps if args.max_steps is not None else config.max_steps
    outcome = run_workflow(executor, max_steps=max_steps, lock_timeout=config.lock_timeout)
    label = "ERROR" if outcome.status == "failed" else outcome.status.upper()
    print(f"{label}: {outcome.message}")
    print(f"  Step {outcome.current_step}/{outcome.total_steps}, {outcome.steps_executed} executed this run")
    return outcome.exit_code


def cmd_step(args, config: EngineConfig) -> int:
    executor = _executor(args, config)
    with instance_lock(config.state_dir, executor.workflow.name, timeout=config.lock_timeout):
        executor.initialize()
        return _print_result(executor.execute_next_step())


def cmd_resume(args, config: EngineConfig) -> int:
    executor = _executor(args, config)
    with instance_lock(config.state_dir, executor.workflow.name, timeout=config.lock_timeout):
        executor.initialize()
        return _print_result(executor.resume())


def cmd_status(args, config: EngineConfig) -> int:
    executor = _executor(args, config)
    state = executor.store.load(executor.workflow.name)
    if is_locked(config.state_dir, executor.workflow.name):
        print(f"{executor.workflow.name}: locked by another driver")
    if state is None:
        print(f"{executor.workflow.name}: not started")
        return EXIT_OK

    print(f"Workflow:  {state.workflow_name}")
    print(f"Step:      {state.current_step}/{executor.total_steps}")
    print(f"Completed: {state.completed}")
    print(f"Updated:   {state.updated_at}")
    if state.parent_workflow:
        print(f"Parent:    {state.parent_workflow}")
    for child in state.child_workflows:
        print(f"  child {child.workflow_path}: {child.status.value}")
    if args.json:
        print(json.dumps(state.variables, indent=2, default=str))
    return EXIT_OK


def _print_tree(node: dict, indent: int = 0) -> None:
    pad = "  " * indent
    print(f"{pad}{node['workflow']} [{node['status']}] {node['current_step']}/{node['total_steps']}")
    for child in node["children"]:
        _print_tree(child, indent + 1)


def cmd_hierarchy(args, config: EngineConfig) -> int:
    executor = _executor(args, config)
    executor.state = executor.store.load(executor.workflow.name)
    tree = executor.get_hierarchy()
    if tree is None:
        print(f"{executor.workflow.name}: not started")
        return EXIT_OK
    if args.json:
        print(json.dumps(tree, indent=2))
    else:
        _print_tree(tree)
    return EXIT_OK


def cmd_reset(args, config: EngineConfig) -> int:
    executor = _executor(args, config)
    with instance_lock(config.state_dir, executor.workflow.name, timeout=config.lock_timeout):
        removed = executor.reset()
    print(f"Reset {executor.workflow.name}" if removed else f"{executor.workflow.name}: no state to reset")
    return EXIT_OK


def _story_machine(args, config: EngineConfig) -> StoryStateMachine:
    path = Path(args.file) if args.file else config.status_file
    machine = StoryStateMachine(LocalStorage(), path)
    machine.load()
    return machine


def cmd_stories_show(args, config: EngineConfig) -> int:
    machine = _story_machine(args, config)
    for state in StoryState:
        stories = machine.document.stories(state)
        print(f"{state.value} ({len(stories)})")
        for story in stories:
            points = f" [{story.points} pts]" if story.points is not None else ""
            print(f"  {story.id}  {story.title}{points}")
    report = machine.validate()
    for error in report.errors:
        print(f"WARNING: {error}")
    return EXIT_OK if report.valid else EXIT_FAILED


def cmd_stories_move(args, config: EngineConfig) -> int:
    machine = _story_machine(args, config)
    try:
        story = machine.transition(args.story, args.state)
    except TransitionError as e:
        print(f"ERROR: {e}")
        return EXIT_FAILED
    print(f"Moved {story.id} to {story.state.value}")
    return EXIT_OK


def cmd_assess(args, config: EngineConfig) -> int:
    scores = {name: getattr(args, name) for name in CRITERIA}
    assessment_config = AssessmentConfig(disabled=frozenset(args.disable or ()))
    if args.thresholds:
        try:
            assessment_config.thresholds = tuple(int(t) for t in args.thresholds.split(","))
        except ValueError:
            raise AssessmentError(f"Thresholds must be integers: {args.thresholds}")
    result = assess_complexity(scores, assessment_config)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return EXIT_OK
    print(f"Level {result.level}: {result.level_name} (score {result.total_score}, range {result.score_range})")
    print(f"Recommended workflow: {result.recommended_workflow}")
    for name, score in result.breakdown.items():
        print(f"  {name:<20} {score}")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog='stepflow', description='Declarative workflow runner')
    parser.add_argument('--config', '-c', help='Path to stepflow.env (default: ./stepflow.env)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # stepflow validate
    p_validate = subparsers.add_parser('validate', help='Check a workflow definition')
    p_validate.add_argument('file', help='Workflow YAML file')
    p_validate.set_defaults(func=cmd_validate)

    # stepflow run / step / resume
    for name, func, help_text in [
        ('run', cmd_run, 'Run a workflow to completion or first failure'),
        ('step', cmd_step, 'Execute the next step only'),
        ('resume', cmd_resume, 'Finish running children, then execute the next step'),
    ]:
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument('file', help='Workflow YAML file')
        p.add_argument('--input', '-i', action='append', metavar='KEY=VALUE',
                       help='Answer for elicit steps (repeatable)')
        if name == 'run':
            p.add_argument('--max-steps', type=int, help='Override MAX_STEPS')
        p.set_defaults(func=func)

    # stepflow status
    p_status = subparsers.add_parser('status', help='Show persisted state')
    p_status.add_argument('file', help='Workflow YAML file')
    p_status.add_argument('--json', action='store_true', help='Also print variables as JSON')
    p_status.set_defaults(func=cmd_status)

    # stepflow hierarchy
    p_hier = subparsers.add_parser('hierarchy', help='Show the workflow/child tree')
    p_hier.add_argument('file', help='Workflow YAML file')
    p_hier.add_argument('--json', action='store_true', help='Print as JSON')
    p_hier.set_defaults(func=cmd_hierarchy)

    # stepflow reset
    p_reset = subparsers.add_parser('reset', help='Delete persisted state')
    p_reset.add_argument('file', help='Workflow YAML file')
    p_reset.set_defaults(func=cmd_reset)

    # stepflow stories
    p_stories = subparsers.add_parser('stories', help='Story status document')
    p_stories.add_argument('--file', '-f', help='Status document (default: STATUS_FILE)')
    p_stories.set_defaults(func=cmd_stories_show)
    stories_sub = p_stories.add_subparsers(dest='stories_cmd')

    p_stories_show = stories_sub.add_parser('show', help='List stories by state')
    p_stories_show.set_defaults(func=cmd_stories_show)

    p_stories_move = stories_sub.add_parser('move', help='Move a story to another state')
    p_stories_move.add_argument('story', help='Story ID')
    p_stories_move.add_argument('state', help='BACKLOG, TODO, IN_PROGRESS or DONE')
    p_stories_move.set_defaults(func=cmd_stories_move)

    # stepflow assess
    p_assess = subparsers.add_parser('assess', help='Score project complexity (level 0-4)')
    for name in CRITERIA:
        p_assess.add_argument(f"--{name.replace('_', '-')}", dest=name, type=int, default=0,
                              help='Score 0-5 (default 0)')
    p_assess.add_argument('--disable', action='append', choices=CRITERIA, help='Ignore a criterion')
    p_assess.add_argument('--thresholds', help='Four ascending scores, e.g. 6,13,21,31')
    p_assess.add_argument('--json', action='store_true', help='Print as JSON')
    p_assess.set_defaults(func=cmd_assess)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_engine_config(Path(args.config) if args.config else None)
    except (ValueError, OSError) as e:
        print(f"ERROR: Invalid config: {e}")
        return EXIT_CONFIG

    try:
        return args.func(args, config)
    except LockTimeout as e:
        print(f"ERROR: {e}")
        return EXIT_FAILED
    except (StepflowError, ValueError, OSError) as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG


if __name__ == '__main__':
    sys.exit(main())

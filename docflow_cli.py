#!/usr/bin/env python3
"""
🩺 Medical Document Workflow - Command Line Interface
Process documents through the live pipeline and inspect, replay and compare
workflow recordings without re-invoking AI calls.
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    from medical_docflow.config import configure_logging, get_settings
    from medical_docflow.recording import Replayer, WorkflowRecorder, WorkflowRecording
    from medical_docflow.workflow import DocflowError, ProgressEvent
except ImportError as e:
    print(f"❌ Failed to import components: {e}")
    sys.exit(1)


def get_recorder(directory: Optional[str] = None, delay_ms: Optional[int] = None) -> WorkflowRecorder:
    settings = get_settings()
    return WorkflowRecorder(
        directory or settings.recording.directory,
        replay_delay_ms=settings.recording.replay_delay_ms if delay_ms is None else delay_ms,
    )


def load(recorder: WorkflowRecorder, recording: str) -> WorkflowRecording:
    return recorder.load_recording(recording)


def write_output(data: Any, output: Optional[str]) -> None:
    """Write JSON to a file, or print it."""
    text = json.dumps(data, indent=2, ensure_ascii=False)
    if output:
        Path(output).write_text(text, encoding="utf-8")
        print(f"📄 Results saved to: {output}")
    else:
        print(text)


def cmd_list(args) -> int:
    recorder = get_recorder(args.directory)
    recordings = recorder.list_recordings()
    if not recordings:
        print("No workflow recordings found.")
        return 0

    print(f"\n📁 Found {len(recordings)} workflow recordings:\n")
    print("Recording".ljust(60) + "Steps".ljust(8) + "Tokens".ljust(10) + "Created")
    print("-" * 100)
    for item in recordings:
        print(
            item["recording_id"].ljust(60)
            + str(item["steps"]).ljust(8)
            + str(item["total_token_usage"]).ljust(10)
            + item["created_at"]
        )
    return 0


def cmd_info(args) -> int:
    recorder = get_recorder(args.directory)
    recording = load(recorder, args.recording)

    if args.format == "json":
        print(recording.to_json())
        return 0

    print(f"\n📊 Workflow Recording: {recording.recording_id}\n")
    print(f"Phase: {recording.phase}")
    print(f"Created: {recording.created_at}")
    print(f"Total Duration: {recording.total_duration_ms:.0f}ms")
    print(f"Total Tokens: {recording.total_token_usage}")
    print(f"Steps: {len(recording.steps)}")

    inputs = recording.inputs
    print(f"\n📋 Input:")
    print(f"  Images: {len(inputs.get('images') or [])}")
    print(f"  Text: {'Yes' if inputs.get('text') else 'No'}")
    print(f"  Language: {inputs.get('language') or 'Not specified'}")

    print(f"\n🔍 Steps:")
    for index, step in enumerate(recording.steps, 1):
        marker = "✅" if step.success else "❌"
        indent = "    " if step.kind == "node" else ""
        print(f"  {indent}{index}. {marker} {step.node_name} ({step.duration_ms:.0f}ms)")
        if step.errors:
            print(f"  {indent}   ❌ Errors: {len(step.errors)}")
        if step.ai_call_count and args.verbose:
            print(f"  {indent}   🤖 AI Calls: {step.ai_call_count}")

    result = recording.final_result or {}
    print(f"\n✅ Final Result:")
    print(f"  Status: {result.get('status', 'unknown')}")
    print(f"  Medical: {'Yes' if (result.get('feature_flags') or {}).get('isMedical') else 'No'}")
    print(f"  Processed Nodes: {', '.join(result.get('processed_nodes') or []) or 'none'}")
    print(f"  Signals: {len(result.get('signals') or [])}")
    if result.get("errors"):
        print(f"  ❌ Errors: {len(result['errors'])}")
    return 0


def cmd_replay(args) -> int:
    recorder = get_recorder(args.directory, args.delay)
    recording = load(recorder, args.recording)
    replayer = Replayer(recording, delay_ms=recorder.replay_delay_ms)
    summary = replayer.summary()

    print(f"\n🔄 Replaying workflow: {summary['recording_id']}")
    print(f"   Steps: {summary['total_steps']} ({summary['stage_steps']} stages, {summary['node_steps']} nodes)")

    def on_progress(event: ProgressEvent) -> None:
        if args.verbose:
            marker = "✅" if event.data.get("success") else "❌"
            print(f"   {event.progress:6.2f}% {marker} {event.stage}")

    final_result = replayer.replay(on_progress)

    print(f"\n✅ Replay completed:")
    print(f"  Steps: {summary['total_steps']}")
    print(f"  Successful: {summary['total_steps'] - len(summary['failed_steps'])}")
    print(f"  Failed: {len(summary['failed_steps'])}")
    print(f"  Status: {final_result.get('status', 'unknown')}")

    if args.output:
        write_output(final_result, args.output)
    return 0


def cmd_extract(args) -> int:
    recorder = get_recorder(args.directory)
    recording = load(recorder, args.recording)

    if not args.step:
        print(f"\n📋 Available steps in {recording.recording_id}:\n")
        for index, step in enumerate(recording.steps, 1):
            print(f"  {index}. {step.node_name} [{step.kind}] ({step.duration_ms:.0f}ms)")
        print(f"\nUse --step <step_name> to extract a specific step.")
        return 0

    matches = [step for step in recording.steps if step.node_name == args.step]
    if not matches:
        print(f"❌ Step not found: {args.step}")
        return 1

    step = matches[0]
    if args.output or args.format == "json":
        write_output(step.model_dump(by_alias=True), args.output)
        return 0

    print(f"\n📊 Step: {step.node_name}\n")
    print("State keys:", sorted(step.output_diff))
    if "token_usage" in step.output_diff:
        print(f"Tokens used: {step.output_diff['token_usage']}")
    if step.errors:
        print(f"Errors: {step.errors}")
    return 0


def analyze_recording(recording: WorkflowRecording) -> Dict[str, Any]:
    """Performance breakdown of a recording."""
    steps = recording.steps
    total = recording.total_duration_ms or 1.0
    stage_steps = [step for step in steps if step.kind == "stage"]
    node_steps = [step for step in steps if step.kind == "node"]

    slowest = sorted(steps, key=lambda step: step.duration_ms, reverse=True)[:5]
    token_steps = [
        (step.node_name, step.output_diff.get("token_usage"))
        for step in node_steps + [s for s in stage_steps if s.node_name == "feature_detection"]
        if isinstance(step.output_diff.get("token_usage"), int)
    ]

    return {
        "recording_id": recording.recording_id,
        "total_duration_ms": recording.total_duration_ms,
        "total_token_usage": recording.total_token_usage,
        "stages": [
            {
                "name": step.node_name,
                "duration_ms": step.duration_ms,
                "share": round(step.duration_ms / total, 4),
                "success": step.success,
            }
            for step in stage_steps
        ],
        "slowest_steps": [{"name": step.node_name, "kind": step.kind, "duration_ms": step.duration_ms} for step in slowest],
        "token_usage_by_step": dict(token_steps),
        "ai_calls": sum(step.ai_call_count for step in steps),
        "failed_steps": [step.node_name for step in steps if not step.success],
    }


def cmd_analyze(args) -> int:
    recorder = get_recorder(args.directory)
    analysis = analyze_recording(load(recorder, args.recording))

    if args.output or args.format == "json":
        write_output(analysis, args.output)
        return 0

    print(f"\n⚡ Performance Analysis: {analysis['recording_id']}\n")
    print("📊 Overall Performance:")
    print(f"  Total Duration: {analysis['total_duration_ms']:.0f}ms")
    print(f"  Total Tokens: {analysis['total_token_usage']}")
    print(f"  AI Calls: {analysis['ai_calls']}")

    print("\n🐢 Slowest Steps:")
    for item in analysis["slowest_steps"]:
        print(f"  {item['name']} [{item['kind']}]: {item['duration_ms']:.0f}ms")

    if analysis["failed_steps"]:
        print(f"\n❌ Failed Steps: {', '.join(analysis['failed_steps'])}")
    return 0


def compare_recordings(first: WorkflowRecording, second: WorkflowRecording) -> Dict[str, Any]:
    """Metric and step-by-step comparison of two recordings."""
    rows: List[Dict[str, Any]] = []
    for index in range(max(len(first.steps), len(second.steps))):
        a = first.steps[index] if index < len(first.steps) else None
        b = second.steps[index] if index < len(second.steps) else None
        if a is not None and b is not None and a.node_name == b.node_name:
            rows.append({
                "step": a.node_name,
                "duration_a_ms": a.duration_ms,
                "duration_b_ms": b.duration_ms,
                "difference_ms": round(b.duration_ms - a.duration_ms, 2),
                "same_output": a.output_diff == b.output_diff,
            })
        elif a is not None and b is not None:
            rows.append({"step": f"{a.node_name} / {b.node_name}", "mismatch": True})
        elif a is not None:
            rows.append({"step": a.node_name, "present_in": "A"})
        else:
            rows.append({"step": b.node_name, "present_in": "B"})

    return {
        "a": first.recording_id,
        "b": second.recording_id,
        "metrics": {
            "duration_ms": [first.total_duration_ms, second.total_duration_ms],
            "total_token_usage": [first.total_token_usage, second.total_token_usage],
            "steps": [len(first.steps), len(second.steps)],
        },
        "steps": rows,
        "same_final_result": first.final_result == second.final_result,
    }


def cmd_compare(args) -> int:
    recorder = get_recorder(args.directory)
    comparison = compare_recordings(load(recorder, args.recording), load(recorder, args.compare))

    if args.output or args.format == "json":
        write_output(comparison, args.output)
        return 0

    metrics = comparison["metrics"]
    print(f"\n📊 Comparing workflows:\n")
    print(f"A: {comparison['a']}")
    print(f"B: {comparison['b']}\n")
    print("📈 Metrics Comparison:")
    print(f"  Duration: {metrics['duration_ms'][0]:.0f}ms vs {metrics['duration_ms'][1]:.0f}ms")
    print(f"  Tokens: {metrics['total_token_usage'][0]} vs {metrics['total_token_usage'][1]}")
    print(f"  Steps: {metrics['steps'][0]} vs {metrics['steps'][1]}")

    print("\n🔍 Step-by-Step Comparison:")
    for index, row in enumerate(comparison["steps"], 1):
        if "present_in" in row:
            print(f"  {index}. {row['step']}: Present in {row['present_in']} only")
        elif row.get("mismatch"):
            print(f"  {index}. {row['step']}: Different steps")
        else:
            same = "same output" if row["same_output"] else "different output"
            print(f"  {index}. {row['step']}: {row['difference_ms']:+.0f}ms ({same})")

    print(f"\nFinal results {'match' if comparison['same_final_result'] else 'differ'}")
    return 0


def cmd_process(args) -> int:
    from medical_docflow.core.document_ingestion import DocumentValidator, MedicalDocument
    from medical_docflow.workflow import create_document_pipeline

    path = Path(args.file)
    if not path.is_file():
        print(f"❌ {args.file} (not found)")
        return 1

    print("🩺 Medical Document Workflow - Production CLI")
    print("=" * 50)
    print(f"✅ {path.name}")

    document = MedicalDocument(
        text=path.read_text(encoding="utf-8"),
        language=args.language,
        metadata={"source": str(path.absolute())},
    )
    DocumentValidator().validate_document(document)

    pipeline = create_document_pipeline(record=True if args.record else None)

    def on_progress(event: ProgressEvent) -> None:
        if args.verbose:
            print(f"   {event.progress:6.2f}% {event.stage}: {event.message}")

    print(f"\n🚀 Processing document {document.document_id}...")
    result = asyncio.run(pipeline.run(document, progress_callback=on_progress))

    print(f"\n{'✅' if result.succeeded else '❌'} Processing {result.status}")
    print(f"   Processing Time: {result.processing_time_ms / 1000:.1f}s")
    print(f"   Nodes: {', '.join(result.processed_nodes) or 'none'}")
    print(f"   Tokens: {result.token_usage}")
    if result.errors:
        print(f"   Errors: {len(result.errors)}")
    if result.recording_id:
        print(f"   📼 Recording: {result.recording_id}")

    report_file = args.output or f"{path.stem}_report_{datetime.now().strftime('%Y%m%d_%H%M%S')}.json"
    if result.save_report(report_file):
        print(f"\n📁 Report: {report_file}")
    return 0 if result.succeeded else 1


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="🩺 Medical Document Workflow - Production CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Process a document and record the run
  python docflow_cli.py process report.txt --record -v

  # Inspect recordings
  python docflow_cli.py list
  python docflow_cli.py info workflow-analysis-20250101-120000-ab12cd
  python docflow_cli.py extract <recording> --step feature_detection

  # Replay without AI calls and compare two runs
  python docflow_cli.py replay <recording> --delay 200 -o replay.json
  python docflow_cli.py compare <recording-a> <recording-b>
        """
    )
    parser.add_argument('--directory', help='Recording directory (default: from settings)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--version', action='version', version='Medical Document Workflow CLI v1.0.0')

    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('list', help='List workflow recordings')

    info = subparsers.add_parser('info', help='Show recording details')
    info.add_argument('recording', help='Recording id or file path')
    info.add_argument('--format', choices=['text', 'json'], default='text')

    replay = subparsers.add_parser('replay', help='Replay a recording without AI calls')
    replay.add_argument('recording', help='Recording id or file path')
    replay.add_argument('-d', '--delay', type=int, help='Delay between steps in ms (0-5000)')
    replay.add_argument('-o', '--output', help='Write the replayed final result to a file')

    extract = subparsers.add_parser('extract', help='Extract a single step')
    extract.add_argument('recording', help='Recording id or file path')
    extract.add_argument('-s', '--step', help='Step name to extract')
    extract.add_argument('-o', '--output', help='Output file')
    extract.add_argument('--format', choices=['text', 'json'], default='text')

    analyze = subparsers.add_parser('analyze', help='Performance analysis of a recording')
    analyze.add_argument('recording', help='Recording id or file path')
    analyze.add_argument('-o', '--output', help='Output file')
    analyze.add_argument('--format', choices=['text', 'json'], default='text')

    compare = subparsers.add_parser('compare', help='Compare two recordings')
    compare.add_argument('recording', help='First recording id or file path')
    compare.add_argument('compare', help='Second recording id or file path')
    compare.add_argument('-o', '--output', help='Output file')
    compare.add_argument('--format', choices=['text', 'json'], default='text')

    process = subparsers.add_parser('process', help='Run the live pipeline on a text file')
    process.add_argument('file', help='Text file with the extracted document content')
    process.add_argument('-l', '--language', default='en', help='Document language (default: en)')
    process.add_argument('--record', action='store_true', help='Record the run for replay')
    process.add_argument('-o', '--output', help='Report output file')

    args = parser.parse_args()
    configure_logging()

    if args.command == 'replay' and args.delay is not None and not 0 <= args.delay <= 5000:
        print("❌ Delay must be 0-5000 ms")
        sys.exit(1)

    commands = {
        'list': cmd_list,
        'info': cmd_info,
        'replay': cmd_replay,
        'extract': cmd_extract,
        'analyze': cmd_analyze,
        'compare': cmd_compare,
        'process': cmd_process,
    }

    try:
        sys.exit(commands[args.command](args))
    except KeyboardInterrupt:
        print("\n⚠️ Interrupted")
        sys.exit(0)
    except DocflowError as e:
        print(f"\n❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

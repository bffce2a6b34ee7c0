"""Command line entry point: analyze an exam and its answer sheets."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from apps.orchestrator.aggregator import AggregateSummary, BatchSummary, ExamOverview
from apps.orchestrator.models import Question, SourceArtifact
from apps.orchestrator.session import AnalysisSession
from eduscan import get_version
from eduscan.core.validation import ValidationFailure
from eduscan.pipeline import EngineContext, bootstrap_engine

app = typer.Typer(help="Split, analyze and aggregate exams and student answer sheets.")
console = Console()


def _bootstrap(
    config: Path | None,
    repo_root: Path | None,
    output_dir: Path | None,
    overrides: Dict[str, Dict[str, Any]],
) -> EngineContext:
    try:
        return bootstrap_engine(config, repo_root=repo_root, output_dir=output_dir, overrides=overrides)
    except (ValidationFailure, ValueError) as exc:
        typer.echo(f"Could not load engine config: {exc}", err=True)
        raise typer.Exit(code=2) from exc


async def _run(
    ctx: EngineContext,
    exam: Path,
    students: List[Path],
    *,
    exam_title: str,
    batch: bool,
    delegated: bool,
    commit: bool,
) -> Dict[str, Any]:
    session: AnalysisSession = ctx.create_session()
    run = await session.upload_exam(SourceArtifact.from_path(exam))
    if run is None:
        return {"exam_error": session.exam_error}
    await run.settled()
    report: Dict[str, Any] = {"exam_title": exam_title, "questions": list(session.questions.snapshot())}
    report["overview"] = session.exam_overview()

    artifacts = [SourceArtifact.from_path(path) for path in students]
    if len(artifacts) == 1 and not batch:
        answer_run = await session.upload_student(artifacts[0])
        if answer_run is None:
            report["student_error"] = session.student_error
            return report
        await answer_run.settled()
        report["student"] = (artifacts[0].stem, session.student_summary())
        if commit:
            report["commit"] = (await session.commit_student(artifacts[0].stem, exam_title)).value
    elif artifacts:
        await session.upload_batch(artifacts, delegated=delegated)
        report["batch"] = session.batch_summaries()
        if commit:
            report["commit"] = (await session.commit_batch(exam_title)).value
    return report


def _print_questions(questions: List[Question]) -> None:
    table = Table("#", "State", "Chapter", "Difficulty", "Knowledge points", "Methods")
    for question in questions:
        analysis = question.analysis
        table.add_row(
            str(question.ordinal),
            question.failure_reason or question.analysis_state.value,
            analysis.chapter if analysis else "",
            str(analysis.difficulty) if analysis else "",
            ", ".join(analysis.knowledge_points) if analysis else "",
            ", ".join(analysis.methods) if analysis else "",
        )
    console.print(table)


def _print_overview(overview: ExamOverview) -> None:
    console.print(
        f"[bold]Questions:[/bold] {overview.analyzed_count}/{overview.question_count} analyzed, "
        f"{overview.failed_count} failed"
    )
    if overview.average_difficulty is not None:
        console.print(f"[bold]Average difficulty:[/bold] {overview.average_difficulty}")
    table = Table("Top knowledge points", "Questions")
    for entry in overview.top_knowledge_points:
        table.add_row(entry.tag, str(entry.count))
    console.print(table)


def _print_summary(name: str, summary: AggregateSummary) -> None:
    console.print(f"[bold]{name}[/bold]: {summary.total_score:g}/{summary.max_score:g}")
    table = Table("Category", "Mastered", "Missing")
    table.add_row("Knowledge", ", ".join(summary.mastered_knowledge), ", ".join(summary.missing_knowledge))
    table.add_row("Methods", ", ".join(summary.mastered_methods), ", ".join(summary.missing_methods))
    console.print(table)
    if summary.recommended_chapters:
        console.print("[bold]Review:[/bold] " + "; ".join(summary.recommended_chapters))
    if summary.failed:
        console.print(f"[yellow]{summary.failed} answers could not be analyzed.[/yellow]")


def _print_batch(batch: BatchSummary) -> None:
    table = Table("#", "Student", "Score", "Missing knowledge")
    for subject in batch.subjects:
        if subject.split_error is not None:
            table.add_row(str(subject.position + 1), subject.subject_name, "-", f"[red]{subject.split_error}[/red]")
            continue
        summary = subject.summary
        table.add_row(
            str(subject.position + 1),
            subject.subject_name,
            f"{summary.total_score:g}/{summary.max_score:g}",
            ", ".join(summary.missing_knowledge),
        )
    console.print(table)
    if batch.average_score is not None:
        console.print(f"[bold]Average score:[/bold] {batch.average_score:g}/{batch.average_max_score:g}")


def _to_json(report: Dict[str, Any]) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for key, value in report.items():
        if key == "questions":
            payload[key] = [question.model_dump(mode="json") for question in value]
        elif key == "student":
            payload[key] = {"name": value[0], **value[1].model_dump(mode="json")}
        elif hasattr(value, "model_dump"):
            payload[key] = value.model_dump(mode="json")
        else:
            payload[key] = value
    return payload


@app.command()
def analyze(
    exam: Path = typer.Argument(..., exists=True, dir_okay=False, help="Exam paper to split and analyze."),
    student: List[Path] = typer.Option(
        [],
        "--student",
        "-s",
        exists=True,
        dir_okay=False,
        help="Answer sheet(s). One sheet runs the single-student flow, several run a batch.",
    ),
    config: Optional[Path] = typer.Option(None, "--config", help="Engine YAML (default: config/engine.yaml)."),
    repo_root: Optional[Path] = typer.Option(None, "--repo-root", help="Root used for .env and relative paths."),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", help="Directory for logs and local exports."),
    exam_title: Optional[str] = typer.Option(None, "--exam-title", help="Title used in commits (default: file stem)."),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Override analysis.timeout_seconds."),
    batch: bool = typer.Option(False, "--batch", help="Use the batch flow even for a single sheet."),
    delegated: bool = typer.Option(False, "--delegated", help="Let the backend split and grade the whole batch."),
    commit: bool = typer.Option(False, "--commit", help="Commit the summaries to the knowledge store."),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON instead of tables."),
) -> None:
    """Run the exam flow, then the single-student or batch flow."""

    overrides: Dict[str, Dict[str, Any]] = {}
    if timeout is not None:
        overrides["analysis"] = {"timeout_seconds": timeout}
    ctx = _bootstrap(config, repo_root, output_dir, overrides)
    title = exam_title or exam.stem
    report = asyncio.run(
        _run(ctx, exam, list(student), exam_title=title, batch=batch, delegated=delegated, commit=commit)
    )

    if as_json:
        typer.echo(json.dumps(_to_json(report), indent=2, ensure_ascii=False))
    else:
        if "exam_error" in report:
            console.print(f"[red]Exam could not be split:[/red] {report['exam_error']}")
        else:
            _print_questions(report["questions"])
            _print_overview(report["overview"])
        if "student_error" in report:
            console.print(f"[red]Answer sheet could not be split:[/red] {report['student_error']}")
        if "student" in report:
            _print_summary(*report["student"])
        if "batch" in report:
            _print_batch(report["batch"])
        if "commit" in report:
            console.print(f"[bold]Commit:[/bold] {report['commit']}")
    if "exam_error" in report or "student_error" in report:
        raise typer.Exit(code=1)


@app.command("show-config")
def show_config(
    config: Optional[Path] = typer.Option(None, "--config", help="Engine YAML (default: config/engine.yaml)."),
    repo_root: Optional[Path] = typer.Option(None, "--repo-root"),
) -> None:
    """Print the resolved engine configuration as JSON."""

    ctx = _bootstrap(config, repo_root, None, {})
    typer.echo(json.dumps(ctx.config.model_dump(mode="json"), indent=2, ensure_ascii=False))


@app.command()
def version() -> None:
    """Print the installed EduScan version."""
    typer.echo(get_version())


if __name__ == "__main__":  # pragma: no cover
    app()

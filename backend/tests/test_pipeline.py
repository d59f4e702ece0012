"""
Unit tests for the two-phase generation orchestrator.
"""
import pytest

from core.errors import ErrorKind, GenerationError, GenerationInProgressError, InvalidTransitionError
from core.pipeline import GenerationOrchestrator, GenerationStatus
from models.stream_models import FinalDocument, GenerationPhase, GraphPayload, PhaseUpdate, StreamEvent
from services.persistence.repositories import NoteRepository, StorageRepository

from conftest import GUIDE_MARKDOWN, empty_stream_script, sample_graph, success_script


class FlakyStorage:
    """Storage stub whose upload fails for one file name."""

    def __init__(self, failing_name):
        self.failing_name = failing_name
        self.uploaded = []

    async def upload(self, source, related_note_id=None):
        if source.name == self.failing_name:
            raise OSError("disk full")
        self.uploaded.append(source.name)
        return f"file-{source.name}"


class BrokenNoteRepository:
    async def save(self, note):
        raise OSError("database is read-only")


class TestSuccessfulGeneration:
    """Test a clean run through both phases."""

    @pytest.mark.asyncio
    async def test_stage_sequence(self, client, profile, source_files):
        """Stages are reported in pipeline order and graph data is not reported twice."""
        client.document_scripts.append(success_script())
        orchestrator = GenerationOrchestrator(client)
        updates = []

        note = await orchestrator.start_generation(
            source_files, "Cardiology", profile, on_phase_update=updates.append
        )

        assert [u.stage for u in updates] == [
            "extracting", "verifying", "graphing", "structuring", "writing", "writing", "citing",
        ]
        assert note.markdown_content
        assert len(note.graph_data.nodes) >= 1
        assert note.sources == []
        assert orchestrator.status == GenerationStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_markdown_progress_tracks_applied_text(self, client, profile, source_files):
        """Progress after each guide update equals the text length on the note."""
        client.document_scripts.append(success_script())
        orchestrator = GenerationOrchestrator(client)
        seen = []

        def on_phase_update(progress):
            if progress.phase == GenerationPhase.MARKDOWN:
                seen.append((progress.markdown_progress, len(orchestrator.note.markdown_content)))

        await orchestrator.start_generation(source_files, "Cardiology", profile, on_phase_update=on_phase_update)

        assert seen
        assert all(progress == length for progress, length in seen)
        assert seen[-1][0] == len(GUIDE_MARKDOWN)

    @pytest.mark.asyncio
    async def test_note_ready_fires_once_with_graph(self, client, profile, source_files):
        """The note becomes navigable as soon as graph data lands."""
        client.document_scripts.append(success_script())
        orchestrator = GenerationOrchestrator(client)
        ready = []

        def on_note_ready(note):
            ready.append((note.title, len(note.graph_data.nodes), orchestrator.status))

        await orchestrator.start_generation(source_files, "Cardiology", profile, on_note_ready=on_note_ready)

        assert ready == [("Cardiac Output", 2, GenerationStatus.WRITING_GUIDE)]

    @pytest.mark.asyncio
    async def test_thoughts_are_forwarded(self, client, profile, source_files):
        client.document_scripts.append(success_script())
        orchestrator = GenerationOrchestrator(client)
        thoughts = []

        await orchestrator.start_generation(source_files, "Cardiology", profile, on_thought=thoughts.append)

        assert thoughts == ["Reading the sources"]
        assert orchestrator.attempt.thought == "Reading the sources"

    @pytest.mark.asyncio
    async def test_partial_graph_never_clears_fields(self, client, profile, source_files):
        """A later partial update without a summary keeps the earlier one."""
        graph = sample_graph()
        partial = GraphPayload(title="Cardiac Output (revised)", graph_data=graph.graph_data)
        script = [
            StreamEvent.phase(PhaseUpdate(GenerationPhase.METADATA, "graphing", graph=graph)),
            StreamEvent.phase(PhaseUpdate(GenerationPhase.METADATA, "graphing", graph=partial)),
            StreamEvent.complete(FinalDocument(markdown_content=GUIDE_MARKDOWN)),
        ]
        client.document_scripts.append(script)
        orchestrator = GenerationOrchestrator(client)

        note = await orchestrator.start_generation(source_files, "Cardiology", profile)

        assert note.title == "Cardiac Output (revised)"
        assert note.summary == "Determinants of cardiac output."
        assert note.eli5_analogy == "The heart is a pump filling a bucket."
        assert len(note.graph_data.nodes) == 2

    @pytest.mark.asyncio
    async def test_final_document_overwrites_streamed_text(self, client, profile, source_files):
        """The terminal guide replaces the streamed one even when shorter."""
        script = success_script()
        final_text = "# Cardiac Output\n\nCondensed guide. See [AHA](https://www.heart.org/guide)." + " Detail." * 10
        script[-1] = StreamEvent.complete(FinalDocument(markdown_content=final_text))
        client.document_scripts.append(script)
        orchestrator = GenerationOrchestrator(client)

        note = await orchestrator.start_generation(source_files, "Cardiology", profile)

        assert note.markdown_content == final_text
        assert note.title == "Cardiac Output"

    @pytest.mark.asyncio
    async def test_shorter_snapshot_is_ignored_while_streaming(self, client, profile, source_files):
        script = [
            StreamEvent.phase(PhaseUpdate(GenerationPhase.MARKDOWN, "writing", markdown_content="x" * 300)),
            StreamEvent.phase(PhaseUpdate(GenerationPhase.MARKDOWN, "writing", markdown_content="x" * 100)),
            StreamEvent.complete(FinalDocument(markdown_content="y" * 400)),
        ]
        client.document_scripts.append(script)
        orchestrator = GenerationOrchestrator(client)
        lengths = []

        await orchestrator.start_generation(
            source_files, "Cardiology", profile,
            on_phase_update=lambda p: lengths.append(p.markdown_progress),
        )

        assert lengths == [300, 300]

    @pytest.mark.asyncio
    async def test_new_generation_after_complete(self, client, profile, source_files):
        """A finished orchestrator goes back through IDLE for the next run."""
        client.document_scripts.extend([success_script(), success_script()])
        orchestrator = GenerationOrchestrator(client)

        first = await orchestrator.start_generation(source_files, "Cardiology", profile)
        second = await orchestrator.start_generation(source_files, "Cardiology", profile)

        assert first.id != second.id
        assert orchestrator.status == GenerationStatus.COMPLETE


class TestGenerationFailures:
    """Test error classification at the orchestration boundary."""

    @pytest.mark.asyncio
    async def test_empty_terminal_content_is_transient(self, client, profile, source_files):
        """An empty final guide is reported as retryable, not as a generic failure."""
        script = success_script()
        script[-1] = StreamEvent.complete(FinalDocument(markdown_content=""))
        client.document_scripts.append(script)
        orchestrator = GenerationOrchestrator(client)

        with pytest.raises(GenerationError) as exc_info:
            await orchestrator.start_generation(source_files, "Cardiology", profile)

        assert exc_info.value.kind == ErrorKind.TRANSIENT_EMPTY_OUTPUT
        assert exc_info.value.retryable
        assert orchestrator.status == GenerationStatus.ERROR
        assert orchestrator.attempt.error_kind == ErrorKind.TRANSIENT_EMPTY_OUTPUT

    @pytest.mark.asyncio
    async def test_short_terminal_content_is_transient(self, client, profile, source_files):
        script = success_script()
        script[-1] = StreamEvent.complete(FinalDocument(markdown_content="# Too short"))
        client.document_scripts.append(script)
        orchestrator = GenerationOrchestrator(client)

        with pytest.raises(GenerationError) as exc_info:
            await orchestrator.start_generation(source_files, "Cardiology", profile)

        assert exc_info.value.kind == ErrorKind.TRANSIENT_EMPTY_OUTPUT

    @pytest.mark.asyncio
    async def test_empty_stream_is_transient(self, client, profile, source_files):
        client.document_scripts.append(empty_stream_script())
        orchestrator = GenerationOrchestrator(client)

        with pytest.raises(GenerationError) as exc_info:
            await orchestrator.start_generation(source_files, "Cardiology", profile)

        assert exc_info.value.kind == ErrorKind.TRANSIENT_EMPTY_OUTPUT
        # Graph data that arrived before the failure stays on the temp note
        assert len(orchestrator.note.graph_data.nodes) == 2

    @pytest.mark.asyncio
    async def test_stream_without_terminal_event_is_transient(self, client, profile, source_files):
        client.document_scripts.append(success_script()[:-1])
        orchestrator = GenerationOrchestrator(client)

        with pytest.raises(GenerationError) as exc_info:
            await orchestrator.start_generation(source_files, "Cardiology", profile)

        assert exc_info.value.kind == ErrorKind.TRANSIENT_EMPTY_OUTPUT

    @pytest.mark.asyncio
    async def test_other_errors_are_generation_failures(self, client, profile, source_files):
        client.document_scripts.append([
            StreamEvent.phase(PhaseUpdate(GenerationPhase.METADATA, "extracting")),
            ValueError("Knowledge graph phase failed"),
        ])
        orchestrator = GenerationOrchestrator(client)

        with pytest.raises(GenerationError) as exc_info:
            await orchestrator.start_generation(source_files, "Cardiology", profile)

        assert exc_info.value.kind == ErrorKind.GENERATION_FAILURE
        assert not exc_info.value.retryable
        assert orchestrator.status == GenerationStatus.ERROR

    @pytest.mark.asyncio
    async def test_concurrent_start_is_refused(self, client, profile, source_files):
        orchestrator = GenerationOrchestrator(client)
        orchestrator.status = GenerationStatus.WRITING_GUIDE

        with pytest.raises(GenerationInProgressError):
            await orchestrator.start_generation(source_files, "Cardiology", profile)
        assert client.document_calls == []

    def test_illegal_transition_is_rejected(self, client):
        orchestrator = GenerationOrchestrator(client)

        with pytest.raises(InvalidTransitionError):
            orchestrator._transition(GenerationStatus.COMPLETE)

    @pytest.mark.asyncio
    async def test_discard_after_error_returns_to_idle(self, client, profile, source_files):
        client.document_scripts.append(empty_stream_script())
        orchestrator = GenerationOrchestrator(client)
        with pytest.raises(GenerationError):
            await orchestrator.start_generation(source_files, "Cardiology", profile)

        orchestrator.discard(orchestrator.note.id)

        assert orchestrator.status == GenerationStatus.IDLE
        assert orchestrator.note is None


class TestPersistence:
    """Test storage of the finished note and its originals."""

    @pytest.mark.asyncio
    async def test_note_and_files_are_stored(self, client, profile, source_files, database):
        client.document_scripts.append(success_script())
        notes = NoteRepository(database)
        storage = StorageRepository(database)
        orchestrator = GenerationOrchestrator(client, note_repository=notes, storage_repository=storage)

        note = await orchestrator.start_generation(source_files, "Cardiology", profile)

        stored = await notes.get(note.id)
        assert stored is not None
        assert stored.markdown_content == note.markdown_content
        assert len(stored.source_file_ids) == 1
        downloaded = await storage.download(stored.source_file_ids[0])
        assert downloaded.data == source_files[0].data

    @pytest.mark.asyncio
    async def test_partial_upload_failure_is_tolerated(self, client, profile, source_files):
        from models.note_models import SourceFile

        files = source_files + [SourceFile(name="broken.pdf", mime_type="application/pdf", data=b"%PDF")]
        client.document_scripts.append(success_script())
        storage = FlakyStorage(failing_name="broken.pdf")
        orchestrator = GenerationOrchestrator(client, storage_repository=storage)

        note = await orchestrator.start_generation(files, "Cardiology", profile)

        assert note.source_file_ids == ["file-lecture.txt"]
        assert note.source_file_names == ["lecture.txt", "broken.pdf"]
        assert orchestrator.status == GenerationStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_note_save_failure_is_not_fatal(self, client, profile, source_files):
        client.document_scripts.append(success_script())
        orchestrator = GenerationOrchestrator(client, note_repository=BrokenNoteRepository())

        note = await orchestrator.start_generation(source_files, "Cardiology", profile)

        assert note.markdown_content
        assert orchestrator.status == GenerationStatus.COMPLETE

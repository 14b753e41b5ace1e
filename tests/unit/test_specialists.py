"""Tests for the coder, researcher and reporter workers."""

from datetime import datetime, timedelta

import pytest

from enclave.agents.coder import CoderWorker, classify_error, detect_language, install_command, run_command
from enclave.agents.reporter import ReporterWorker, email_template, infer_language, overall_progress
from enclave.agents.researcher import ResearcherWorker, build_search_strategy, review_framework
from enclave.core.errors import ToolInputError
from enclave.core.models import AgentTask
from enclave.memory.models import ConversationStyle, DeadlineStatus
from enclave.utils.clock import utcnow


def in_days(days: float) -> datetime:
    return utcnow() + timedelta(days=days)


@pytest.fixture
def coder(memory_store, running_runtime):
    return CoderWorker(memory_store, running_runtime)


@pytest.fixture
def researcher(memory_store):
    return ResearcherWorker(memory_store)


@pytest.fixture
def reporter(memory_store):
    return ReporterWorker(memory_store)


class TestCoderHelpers:
    """Test language detection and command templates."""

    @pytest.mark.parametrize(
        ("path", "language"),
        [("analysis.R", "r"), ("run.sh", "bash"), ("app.ts", "node"), ("model.stan", "stan"), ("notes", "python")],
    )
    def test_detect_language(self, path, language):
        """Test extension mapping."""
        assert detect_language(path) == language

    def test_run_command(self):
        """Test interpreter templates and argument quoting."""
        assert run_command("main.py", "python", ["--name", "a b"]) == "python3 main.py --name 'a b'"
        assert run_command("fit.R", "r") == "Rscript fit.R"
        assert run_command("model.stan", "stan") == "stan model.stan"

    def test_install_command(self):
        """Test package installation templates."""
        assert install_command("numpy", "python") == "pip install numpy"
        assert install_command("numpy", "python", "/venv") == "source /venv/bin/activate && pip install numpy"
        assert install_command("lodash", "node") == "npm install lodash"
        with pytest.raises(ToolInputError):
            install_command("x", "matlab")

    @pytest.mark.parametrize(
        ("text", "kind"),
        [
            ("ModuleNotFoundError: No module named 'pandas'", "import"),
            ("TypeError: unsupported operand", "type"),
            ("KeyError: 'age'", "access"),
            ("IndexError: list index out of range", "access"),
            ("Segmentation fault", "unknown"),
        ],
    )
    def test_classify_error(self, text, kind):
        """Test error classification rules."""
        assert classify_error(text).kind.value == kind


class TestCoderWorker:
    """Test coder tasks against the runtime."""

    @pytest.mark.asyncio
    async def test_run_script(self, coder, running_runtime):
        """Test that the interpreter follows the file extension."""
        result = await coder.execute(AgentTask(type="run_script", input={"script": "fit.R"}))
        assert result.success
        assert result.output["language"] == "r"
        assert running_runtime.commands[-1] == "Rscript fit.R"

    @pytest.mark.asyncio
    async def test_run_command_failure(self, coder):
        """Test that a failing command yields a failed result with stderr."""
        result = await coder.execute(AgentTask(type="run_command", input={"command": "exit 3"}))
        assert not result.success
        assert result.output["exit_code"] == 3
        assert result.error == "failed\n"

    @pytest.mark.asyncio
    async def test_code_routing(self, coder):
        """Test that the generic code task picks an action from its input."""
        ran = await coder.execute(AgentTask(type="code", input={"command": "echo hi"}))
        assert ran.output["stdout"] == "hi\n"

        debugged = await coder.execute(AgentTask(type="code", input={"error": "KeyError: 'x'"}))
        assert debugged.output["error_type"] == "access"

        planned = await coder.execute(AgentTask(type="code", input={"content": "machine learning model for sepsis"}))
        assert planned.output["status"] == "ready_for_implementation"
        assert "Start with train/test split and cross-validation" in planned.output["suggested_approach"]

    @pytest.mark.asyncio
    async def test_install_package(self, coder, running_runtime):
        """Test package installation through the runtime."""
        result = await coder.execute(AgentTask(type="install_package", input={"package": "scipy"}))
        assert result.output["installed"] is True
        assert running_runtime.commands[-1] == "pip install scipy"

    @pytest.mark.asyncio
    async def test_review(self, coder):
        """Test review checklists for selected areas."""
        result = await coder.execute(AgentTask(type="review_code", input={"focus_areas": ["security", "bogus"]}))
        assert list(result.output["checklist"]) == ["security"]

    @pytest.mark.asyncio
    async def test_missing_input(self, coder):
        """Test that missing required input fails the task."""
        result = await coder.execute(AgentTask(type="run_script", input={}))
        assert not result.success
        assert "script" in result.error

    @pytest.mark.asyncio
    async def test_unknown_task(self, coder):
        """Test an unknown task type."""
        result = await coder.execute(AgentTask(type="deploy"))
        assert result.error == "Unknown task type: deploy"


class TestResearcher:
    """Test research planning."""

    def test_search_strategy(self):
        """Test MeSH expansion and filters."""
        strategy = build_search_strategy(
            "machine learning for stroke mortality",
            date_range={"from": "2015", "to": "2024"},
            study_types=["Randomized Controlled Trial"],
        )
        assert strategy.mesh_terms[:3] == ["Machine Learning", "Artificial Intelligence", "Deep Learning"]
        assert "Stroke" in strategy.mesh_terms
        assert strategy.pubmed_query.startswith("((machine learning for stroke mortality[tiab]) OR (")
        assert strategy.pubmed_query.endswith("AND 2015:2024[dp] AND (Randomized Controlled Trial[pt])")
        assert strategy.sources == ["pubmed", "scholar"]
        assert strategy.max_results == 20

    def test_plain_query(self):
        """Test a query without known domain phrases."""
        strategy = build_search_strategy("sleep hygiene")
        assert strategy.mesh_terms == []
        assert strategy.pubmed_query == "(sleep hygiene[tiab])"

    def test_review_framework(self):
        """Test framework selection."""
        assert review_framework("systematic")[0] == "prisma"
        assert review_framework("narrative")[0] == "pico"
        assert review_framework("systematic", "SPIDER")[0] == "spider"

    @pytest.mark.asyncio
    async def test_research_task(self, researcher):
        """Test that message content serves as the query."""
        result = await researcher.execute(AgentTask(type="research", input={"content": "meta-analysis of CBT"}))
        assert result.output["status"] == "search_ready"
        assert "Meta-Analysis" in result.output["search_strategy"]["mesh_terms"]

    @pytest.mark.asyncio
    async def test_literature_review(self, researcher):
        """Test a systematic review protocol."""
        result = await researcher.execute(
            AgentTask(type="literature_review", input={"topic": "ketamine", "scope": "systematic"})
        )
        assert result.output["framework_name"] == "prisma"
        assert result.next_steps[-1] == "Assess risk of bias"

    @pytest.mark.asyncio
    async def test_summarize_lengths(self, researcher):
        """Test summary target lengths."""
        result = await researcher.execute(AgentTask(type="summarize", input={"content": "abc", "type": "abstract"}))
        assert result.output["target_length"] == 250
        assert result.output["content_length"] == 3

    @pytest.mark.asyncio
    async def test_extract_and_bibliography(self, researcher):
        """Test extraction schemas and citation styles."""
        extraction = await researcher.execute(
            AgentTask(type="extract_data", input={"documents": ["a", "b"], "extraction_type": "systematic_review"})
        )
        assert extraction.output["documents_count"] == 2
        assert "effect_size" in extraction.output["schema"]

        bibliography = await researcher.execute(
            AgentTask(type="bibliography", input={"references": [{}], "style": "apa"})
        )
        assert bibliography.output["style"] == "apa"

        bad = await researcher.execute(AgentTask(type="bibliography", input={"style": "mla"}))
        assert not bad.success

    @pytest.mark.asyncio
    async def test_fact_check_requires_claim(self, researcher):
        """Test that a fact check needs a claim."""
        result = await researcher.execute(AgentTask(type="fact_check", input={}))
        assert not result.success


class TestReporterHelpers:
    """Test email language and template helpers."""

    def test_infer_language(self, memory_store):
        """Test Portuguese detection from the domain or the contact's messages."""
        assert infer_language("joao@usp.br") == "pt"
        assert infer_language("team@example.com") == "en"
        contact = memory_store.add_contact(
            name="Bia", email="bia@example.com", sample_messages=["Obrigada pela atenção!"]
        )
        assert infer_language("bia@example.com", contact) == "pt"

    def test_email_template(self):
        """Test template lookup with fallbacks."""
        assert email_template(ConversationStyle.FORMAL, "pt") == {"greeting": "Prezado(a)", "closing": "Atenciosamente"}
        assert email_template("casual", "de")["greeting"] == "Hi"
        assert email_template("poetic", "en")["greeting"] == "Hey"

    def test_overall_progress(self):
        """Test that nothing open means fully done."""
        assert overall_progress([]) == 100


class TestReporterWorker:
    """Test reporter tasks."""

    @pytest.mark.asyncio
    async def test_draft_email_uses_contact(self, reporter, memory_store):
        """Test style and relationship from the contact database."""
        memory_store.add_contact(
            name="Dr. Reis", email="reis@unifesp.br", conversation_style="formal", relationship="mentor"
        )
        result = await reporter.execute(
            AgentTask(type="email", input={"action": "draft", "to": "reis@unifesp.br", "content": "ask for meeting"})
        )
        draft = result.output["draft"]
        assert draft["style"] == "formal"
        assert draft["relationship"] == "mentor"
        assert draft["language"] == "pt"
        assert draft["context"] == "ask for meeting"
        assert result.output["template"]["closing"] == "Atenciosamente"

    @pytest.mark.asyncio
    async def test_email_actions(self, reporter):
        """Test summarize, missing recipient and unknown actions."""
        summary = await reporter.execute(AgentTask(type="email", input={"action": "summarize"}))
        assert summary.output["email_count"] == 0

        no_recipient = await reporter.execute(AgentTask(type="email", input={"action": "draft"}))
        assert not no_recipient.success

        unknown = await reporter.execute(AgentTask(type="email", input={"action": "forward"}))
        assert unknown.error == "Unknown email action: forward"

    @pytest.mark.asyncio
    async def test_create_deadline(self, reporter, memory_store):
        """Test deadline creation with a plan."""
        due = in_days(45).isoformat()
        result = await reporter.execute(
            AgentTask(type="deadline", input={"action": "create", "title": "Paper", "due_date": due})
        )
        deadline = result.output["deadline"]
        assert deadline["weeks_out"] == 7
        assert deadline["phase"] == "building"
        assert deadline["priority"] == "low"
        assert len(deadline["microtasks"]) == 4
        assert result.next_steps[0] == "First microtask: Define scope and outline"
        assert memory_store.get_deadline(deadline["id"]).title == "Paper"

    @pytest.mark.asyncio
    async def test_complete_microtask_and_reports(self, reporter, memory_store):
        """Test progress tracking through microtasks and reports."""
        created = await reporter.execute(
            AgentTask(type="deadline", input={"action": "create", "title": "Talk", "due_date": in_days(10).isoformat()})
        )
        deadline_id = created.output["deadline"]["id"]
        microtask_id = created.output["deadline"]["microtasks"][0]["id"]

        completed = await reporter.execute(
            AgentTask(
                type="deadline",
                input={"action": "complete_microtask", "deadline_id": deadline_id, "microtask_id": microtask_id},
            )
        )
        assert completed.output["progress_percent"] == 25

        report = await reporter.execute(AgentTask(type="report", input={"type": "deadline", "deadline_id": deadline_id}))
        assert report.output["progress"]["completed_tasks"] == 1
        assert len(report.output["progress"]["remaining_tasks"]) == 3

        weekly = await reporter.execute(AgentTask(type="report", input={"type": "weekly"}))
        assert weekly.output["microtasks_completed"] == 1
        assert weekly.output["overall_progress"] == 25

    @pytest.mark.asyncio
    async def test_check_deadlines(self, reporter, memory_store):
        """Test urgent and upcoming buckets."""
        memory_store.add_deadline("urgent", in_days(5))
        memory_store.add_deadline("upcoming", in_days(30))
        memory_store.add_deadline("far", in_days(100))

        result = await reporter.execute(AgentTask(type="deadline", input={"action": "check"}))
        assert result.output["total"] == 3
        assert [d["title"] for d in result.output["urgent_deadlines"]] == ["urgent"]
        assert [d["title"] for d in result.output["upcoming_deadlines"]] == ["upcoming"]

    @pytest.mark.asyncio
    async def test_digest(self, reporter, memory_store):
        """Test the daily digest."""
        memory_store.add_deadline("soon", in_days(6))
        done = memory_store.add_deadline("done", in_days(2))
        memory_store.update_deadline(done.id, status=DeadlineStatus.DONE)

        result = await reporter.execute(AgentTask(type="digest"))
        assert result.output["summary"]["total_deadlines"] == 1
        assert result.output["summary"]["urgent_count"] == 1

    @pytest.mark.asyncio
    async def test_reminders(self, reporter, memory_store):
        """Test reminder messages."""
        deadline = memory_store.add_deadline("Poster", in_days(3))
        gentle = await reporter.execute(AgentTask(type="reminder", input={"deadline_id": deadline.id}))
        assert gentle.output["message"] == 'Reminder: "Poster" - 0% complete'

        final = await reporter.execute(AgentTask(type="reminder", input={"deadline_id": deadline.id, "type": "final"}))
        assert final.output["message"] == 'FINAL: "Poster" is due TODAY!'

        bad = await reporter.execute(AgentTask(type="reminder", input={"deadline_id": deadline.id, "type": "loud"}))
        assert not bad.success

    @pytest.mark.asyncio
    async def test_unknown_deadline(self, reporter):
        """Test that an unknown deadline fails the task."""
        result = await reporter.execute(AgentTask(type="report", input={"type": "deadline", "deadline_id": "x"}))
        assert not result.success
        assert "deadline not found" in result.error

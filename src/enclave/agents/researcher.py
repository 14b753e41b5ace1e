"""Researcher worker: turns research requests into search strategies and review protocols.

No network I/O happens here. The worker prepares queries, frameworks and extraction
schemas; running the searches is left to the model and its external tool servers.
"""

from pydantic import BaseModel, Field

from enclave.agents.base import BaseWorker
from enclave.core.errors import ToolInputError
from enclave.core.models import AgentResult, AgentTask, WorkerRole

MESH_TERMS: dict[str, list[str]] = {
    "machine learning": ["Machine Learning", "Artificial Intelligence", "Deep Learning"],
    "meta-analysis": ["Meta-Analysis as Topic", "Meta-Analysis"],
    "systematic review": ["Systematic Reviews as Topic", "Review Literature as Topic"],
    "neurosurgery": ["Neurosurgical Procedures", "Neurosurgery"],
    "stroke": ["Stroke", "Cerebrovascular Disorders"],
    "mortality": ["Mortality", "Survival Analysis"],
    "prediction": ["Prognosis", "Risk Assessment"],
}

DEFAULT_SOURCES = ["pubmed", "scholar"]
DEFAULT_MAX_RESULTS = 20

REVIEW_FRAMEWORKS: dict[str, dict[str, str]] = {
    "pico": {
        "P": "Population",
        "I": "Intervention",
        "C": "Comparison",
        "O": "Outcome",
    },
    "spider": {
        "S": "Sample",
        "PI": "Phenomenon of Interest",
        "D": "Design",
        "E": "Evaluation",
        "R": "Research type",
    },
    "prisma": {
        "identification": "Identification",
        "screening": "Screening",
        "eligibility": "Eligibility",
        "inclusion": "Inclusion",
    },
}

SUMMARY_LENGTHS = {"abstract": 250, "executive": 500, "detailed": 1500}
DEFAULT_SUMMARY_LENGTH = 500

SYSTEMATIC_REVIEW_SCHEMA = {
    "study_id": "string",
    "authors": "string",
    "year": "number",
    "study_design": "string",
    "population": "string",
    "intervention": "string",
    "comparison": "string",
    "outcome": "string",
    "sample_size": "number",
    "effect_size": "number",
    "confidence_interval": "string",
    "risk_of_bias": "string",
}

BIBLIOGRAPHY_STYLES = ("vancouver", "apa", "harvard", "bibtex")


class SearchStrategy(BaseModel):
    """A prepared literature search."""

    query: str = Field(..., description="Free-text query")
    mesh_terms: list[str] = Field(default_factory=list, description="Controlled-vocabulary terms")
    pubmed_query: str = Field(..., description="Query string in PubMed syntax")
    sources: list[str] = Field(default_factory=lambda: list(DEFAULT_SOURCES))
    max_results: int = Field(DEFAULT_MAX_RESULTS, description="Result cap per source")
    filters: list[str] = Field(default_factory=list, description="PubMed filter clauses")


def suggest_mesh_terms(query: str) -> list[str]:
    """MeSH terms for every known domain phrase in ``query``, without duplicates."""
    lower = query.lower()
    terms: list[str] = []
    for phrase, mesh in MESH_TERMS.items():
        if phrase in lower:
            terms.extend(term for term in mesh if term not in terms)
    return terms


def build_pubmed_query(query: str, mesh_terms: list[str], filters: list[str]) -> str:
    parts = [f"({query}[tiab])"]
    if mesh_terms:
        parts.append("(" + " OR ".join(f'"{term}"[MeSH]' for term in mesh_terms) + ")")
    pubmed_query = " OR ".join(parts)
    if filters:
        pubmed_query = f"({pubmed_query}) AND " + " AND ".join(filters)
    return pubmed_query


def build_search_strategy(
    query: str,
    sources: list[str] | None = None,
    max_results: int | None = None,
    date_range: dict[str, str] | None = None,
    study_types: list[str] | None = None,
) -> SearchStrategy:
    """Expand a query into a search strategy.

    Args:
        query: Free-text query
        sources: Databases to search (default pubmed and scholar)
        max_results: Result cap (default 20)
        date_range: Optional {"from": ..., "to": ...} publication dates
        study_types: Optional publication types, OR-ed together

    Returns:
        SearchStrategy with MeSH terms and a PubMed query
    """
    filters = []
    if date_range:
        filters.append(f"{date_range['from']}:{date_range['to']}[dp]")
    if study_types:
        filters.append("(" + " OR ".join(f"{t}[pt]" for t in study_types) + ")")

    mesh_terms = suggest_mesh_terms(query)
    return SearchStrategy(
        query=query,
        mesh_terms=mesh_terms,
        pubmed_query=build_pubmed_query(query, mesh_terms, filters),
        sources=sources or list(DEFAULT_SOURCES),
        max_results=max_results or DEFAULT_MAX_RESULTS,
        filters=filters,
    )


def review_framework(scope: str, framework: str | None = None) -> tuple[str, dict[str, str]]:
    """Pick a review framework. An explicit known name wins; systematic reviews default to PRISMA."""
    if framework and framework.lower() in REVIEW_FRAMEWORKS:
        name = framework.lower()
    elif scope == "systematic":
        name = "prisma"
    else:
        name = "pico"
    return name, REVIEW_FRAMEWORKS[name]


class ResearcherWorker(BaseWorker):
    role = WorkerRole.RESEARCHER

    @property
    def capabilities(self) -> list[str]:
        return [
            "Build PubMed search strategies with MeSH terms",
            "Literature review protocols (PICO, SPIDER, PRISMA)",
            "Summaries at abstract, executive or detailed length",
            "Fact-check planning",
            "Data extraction schemas",
            "Bibliographies in Vancouver, APA, Harvard or BibTeX",
        ]

    async def handle(self, task: AgentTask) -> AgentResult:
        if task.type in ("search", "research"):
            return self._research(task)
        if task.type == "literature_review":
            return self._literature_review(task)
        if task.type == "summarize":
            return self._summarize(task)
        if task.type == "fact_check":
            return self._fact_check(task)
        if task.type == "extract_data":
            return self._extract_data(task)
        if task.type in ("bibliography", "create_bibliography"):
            return self._bibliography(task)
        return AgentResult(success=False, error=f"Unknown task type: {task.type}")

    def _research(self, task: AgentTask) -> AgentResult:
        query = task.input.get("query") or task.input.get("content")
        if not query:
            raise ToolInputError(task.type, missing=["query"])
        self.notify(f"Researching: {query}")
        strategy = build_search_strategy(
            query,
            sources=task.input.get("sources"),
            max_results=task.input.get("max_results"),
            date_range=task.input.get("date_range"),
            study_types=task.input.get("study_types"),
        )
        return AgentResult(
            success=True,
            output={
                "query": query,
                "search_strategy": strategy.model_dump(),
                "status": "search_ready",
                "estimated_results": "pending",
            },
            next_steps=["Execute search via PubMed tool", "Filter and rank results", "Summarize key findings"],
        )

    def _literature_review(self, task: AgentTask) -> AgentResult:
        topic = task.input.get("topic") or task.input.get("content")
        if not topic:
            raise ToolInputError("literature_review", missing=["topic"])
        scope = task.input.get("scope", "narrative")
        name, framework = review_framework(scope, task.input.get("framework"))
        self.notify(f"Starting {scope} review: {topic}")
        return AgentResult(
            success=True,
            output={
                "topic": topic,
                "scope": scope,
                "framework_name": name,
                "framework": framework,
                "status": "framework_ready",
            },
            next_steps=[
                "Define inclusion/exclusion criteria",
                "Develop search strategy",
                "Search databases",
                "Screen titles and abstracts",
                "Assess risk of bias" if scope == "systematic" else "Synthesize findings",
            ],
        )

    def _summarize(self, task: AgentTask) -> AgentResult:
        content = task.input.get("content", "")
        summary_type = task.input.get("type", "executive")
        target = task.input.get("max_length") or SUMMARY_LENGTHS.get(summary_type, DEFAULT_SUMMARY_LENGTH)
        content_length = len("".join(content)) if isinstance(content, list) else len(content)
        return AgentResult(
            success=True,
            output={
                "type": summary_type,
                "target_length": target,
                "content_length": content_length,
                "status": "ready_to_summarize",
            },
            next_steps=["Generate summary respecting length constraints", "Highlight key findings"],
        )

    def _fact_check(self, task: AgentTask) -> AgentResult:
        claim = task.input.get("claim") or task.input.get("content")
        if not claim:
            raise ToolInputError("fact_check", missing=["claim"])
        return AgentResult(
            success=True,
            output={
                "claim": claim,
                "context": task.input.get("context"),
                "status": "verification_pending",
                "checkpoints": [
                    "Search for primary sources",
                    "Check claim against peer-reviewed literature",
                    "Identify potential biases",
                    "Rate confidence level",
                ],
            },
            next_steps=[
                "Search for supporting/contradicting evidence",
                "Assess source quality",
                "Provide verdict with confidence",
            ],
        )

    def _extract_data(self, task: AgentTask) -> AgentResult:
        documents = task.input.get("documents", [])
        schema = task.input.get("schema")
        if not schema:
            schema = (
                dict(SYSTEMATIC_REVIEW_SCHEMA) if task.input.get("extraction_type") == "systematic_review" else {}
            )
        return AgentResult(
            success=True,
            output={"documents_count": len(documents), "schema": schema, "status": "extraction_ready"},
            next_steps=["Parse documents", "Extract according to schema", "Validate extracted data"],
        )

    def _bibliography(self, task: AgentTask) -> AgentResult:
        references = task.input.get("references", [])
        style = task.input.get("style", "vancouver")
        if style not in BIBLIOGRAPHY_STYLES:
            raise ToolInputError(
                "bibliography", message=f"Unknown citation style: {style}. Use one of {', '.join(BIBLIOGRAPHY_STYLES)}"
            )
        self.notify(f"Creating {style} bibliography for {len(references)} references")
        return AgentResult(
            success=True,
            output={"reference_count": len(references), "style": style, "status": "formatting_ready"},
            next_steps=["Format each reference", "Sort according to style rules", "Generate final bibliography"],
        )

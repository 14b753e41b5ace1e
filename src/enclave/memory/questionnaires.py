"""Built-in validated questionnaires used when none are persisted."""

from enclave.memory.models import (
    QuestionnaireCategory,
    QuestionnaireQuestion,
    QuestionOption,
    ScoringRange,
    ValidatedQuestionnaire,
)

FREQUENCY_OPTIONS = [
    QuestionOption(value=0, label="Not at all"),
    QuestionOption(value=1, label="Several days"),
    QuestionOption(value=2, label="More than half the days"),
    QuestionOption(value=3, label="Nearly every day"),
]

PHQ9_ITEMS = [
    "Little interest or pleasure in doing things",
    "Feeling down, depressed, or hopeless",
    "Trouble falling or staying asleep, or sleeping too much",
    "Feeling tired or having little energy",
    "Poor appetite or overeating",
    "Feeling bad about yourself, or that you are a failure or have let yourself or your family down",
    "Trouble concentrating on things, such as reading the newspaper or watching television",
    "Moving or speaking so slowly that other people could have noticed, or the opposite",
    "Thoughts that you would be better off dead, or of hurting yourself in some way",
]

GAD7_ITEMS = [
    "Feeling nervous, anxious, or on edge",
    "Not being able to stop or control worrying",
    "Worrying too much about different things",
    "Trouble relaxing",
    "Being so restless that it is hard to sit still",
    "Becoming easily annoyed or irritable",
    "Feeling afraid as if something awful might happen",
]


def _questions(items: list[str]) -> list[QuestionnaireQuestion]:
    return [
        QuestionnaireQuestion(id=index, text=text, options=list(FREQUENCY_OPTIONS))
        for index, text in enumerate(items, start=1)
    ]


def default_questionnaires() -> list[ValidatedQuestionnaire]:
    return [
        ValidatedQuestionnaire(
            id="phq-9",
            name="PHQ-9",
            full_name="Patient Health Questionnaire-9",
            category=QuestionnaireCategory.DEPRESSION,
            frequency="biweekly",
            questions=_questions(PHQ9_ITEMS),
            scoring_ranges=[
                ScoringRange(min=0, max=4, interpretation="Minimal depression", severity="minimal"),
                ScoringRange(min=5, max=9, interpretation="Mild depression", severity="mild"),
                ScoringRange(min=10, max=14, interpretation="Moderate depression", severity="moderate"),
                ScoringRange(
                    min=15, max=19, interpretation="Moderately severe depression", severity="moderately_severe"
                ),
                ScoringRange(min=20, max=27, interpretation="Severe depression", severity="severe"),
            ],
        ),
        ValidatedQuestionnaire(
            id="gad-7",
            name="GAD-7",
            full_name="Generalized Anxiety Disorder-7",
            category=QuestionnaireCategory.ANXIETY,
            frequency="biweekly",
            questions=_questions(GAD7_ITEMS),
            scoring_ranges=[
                ScoringRange(min=0, max=4, interpretation="Minimal anxiety", severity="minimal"),
                ScoringRange(min=5, max=9, interpretation="Mild anxiety", severity="mild"),
                ScoringRange(min=10, max=14, interpretation="Moderate anxiety", severity="moderate"),
                ScoringRange(min=15, max=21, interpretation="Severe anxiety", severity="severe"),
            ],
        ),
    ]


CATEGORY_INSTRUCTIONS = {
    QuestionnaireCategory.DEPRESSION: (
        "Over the last 2 weeks, how often have you been bothered by any of the following problems?"
    ),
    QuestionnaireCategory.ANXIETY: (
        "Over the last 2 weeks, how often have you been bothered by the following problems?"
    ),
    QuestionnaireCategory.ADHD: "Please answer the questions below, rating yourself on each of the criteria.",
    QuestionnaireCategory.SLEEP: (
        "The following questions relate to your usual sleep habits during the past month only."
    ),
    QuestionnaireCategory.BURNOUT: "Please read each statement carefully and decide how often you feel that way.",
    QuestionnaireCategory.SELF_EFFICACY: "Please respond to each item by marking one response per item.",
}


def instructions_for(questionnaire: ValidatedQuestionnaire) -> str:
    return CATEGORY_INSTRUCTIONS.get(questionnaire.category, "Please answer each question honestly.")

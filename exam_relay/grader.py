import math
import logging
from typing import Any, Dict, List, Optional

from .errors import UpstreamError
from .json_extractor import extract_json
from .llm_client import ChatModel, text_message, vision_message

logger = logging.getLogger(__name__)

CONTENT_MAX = 4
LANGUAGE_MAX = 6
TOTAL_MAX = 10
SPERRKLAUSEL_CAP = 3

GENERATE_FIELDS = ("headline", "source_text_de", "article_text", "task_en", "task_instruction",
                   "text_type", "word_count")
GRADE_FIELDS = ("content_textstructure", "language", "total", "feedback", "corrections")
PARSE_TASK_FIELDS = ("headline", "article_text", "task_instruction")

DEFAULT_SOURCE_WORDS = 600


# ---- Scoring ---- #
def compute_total(content: int, language: int) -> int:
    """
    Weighted total: round(content * 0.4 + language * 0.6), half up.
    A zero in either sub-score caps the total at 3 (Sperrklausel).
    """
    total = int(math.floor(content * 0.4 + language * 0.6 + 0.5))
    if content == 0 or language == 0:
        total = min(total, SPERRKLAUSEL_CAP)
    return total


def clamp_score(value: Any, upper: int) -> Optional[int]:
    """Coerce a model-supplied score to an int within 0..upper, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return max(0, min(int(math.floor(number + 0.5)), upper))


# ---- Generate ---- #
def fill_prompt_template(template: str, topic: str, words: int) -> str:
    return (template
            .replace("${topic}", topic)
            .replace("{topic}", topic)
            .replace("${length}", str(words))
            .replace("{length}", str(words)))


def generation_token_budget(words: int) -> int:
    # ~1.8 tokens per German word plus room for the task text and JSON overhead
    estimated = round(words * 1.8) + 500
    return min(max(estimated, 1500), 6000)


async def generate_exam(llm: ChatModel, prompt_template: str, topic: str = "",
                        source_len_words: Optional[int] = None) -> Dict[str, Any]:
    words = source_len_words or DEFAULT_SOURCE_WORDS
    prompt = fill_prompt_template(prompt_template, topic or "", words)
    messages = [
        text_message("system", "You are an Abitur exam generator. Return valid JSON only. No markdown fences."),
        text_message("user", prompt),
    ]
    raw = await llm.complete(messages, max_tokens=generation_token_budget(words))
    exam = extract_json(raw, GENERATE_FIELDS)

    has_source = any(exam.get(k) for k in ("source_text_de", "article_text"))
    has_task = any(exam.get(k) for k in ("task_en", "task_instruction"))
    if not (has_source and has_task):
        logger.warning("Generated exam is missing fields, got keys %s", sorted(exam))
        raise UpstreamError("The model returned an incomplete exam (source text or task missing).")
    return exam


# ---- Grade ---- #
GRADE_SYSTEM_PROMPT = """You are a strict German Abitur English teacher.
You must grade the student's mediation and return your evaluation in the following JSON format ONLY (no markdown, no extra text):
{
  "content_textstructure": <number 0-4>,
  "language": <number 0-6>,
  "total": <number 0-10>,
  "feedback": "<detailed feedback in German with Markdown formatting>",
  "corrections": "<specific corrections and error list in German with Markdown formatting>"
}
IMPORTANT: Return ONLY valid JSON. No markdown fences. No preamble."""


def build_grade_messages(source_text_de: str, task_en: str, student_text_en: str,
                         rubric_prompt: str = "") -> List[Dict[str, Any]]:
    user = (
        f"Deutscher Quelltext:\n{source_text_de}\n\n"
        f"Englische Aufgabenstellung:\n{task_en}\n\n"
        f"Schülertext (Englisch):\n{student_text_en}"
    )
    if rubric_prompt:
        user += f"\n\nBewertungsraster:\n{rubric_prompt}"
    return [text_message("system", GRADE_SYSTEM_PROMPT), text_message("user", user)]


def score_grading(parsed: Dict[str, Any]) -> Dict[str, Any]:
    content = clamp_score(parsed.get("content_textstructure"), CONTENT_MAX)
    language = clamp_score(parsed.get("language"), LANGUAGE_MAX)
    if content is not None and language is not None:
        total = compute_total(content, language)
    else:
        total = clamp_score(parsed.get("total"), TOTAL_MAX)

    return {
        "scores": {
            "content_textstructure": content,
            "language": language,
            "total": total,
        },
        "feedback": str(parsed.get("feedback") or ""),
        "corrections": str(parsed.get("corrections") or ""),
    }


async def grade_mediation(llm: ChatModel, source_text_de: str, task_en: str, student_text_en: str,
                          rubric_prompt: str = "") -> Dict[str, Any]:
    messages = build_grade_messages(source_text_de, task_en, student_text_en, rubric_prompt)
    raw = await llm.complete(messages)
    return score_grading(extract_json(raw, GRADE_FIELDS))


# ---- OCR ---- #
OCR_INSTRUCTION = (
    "Transcribe this handwritten text exactly as written. Preserve line breaks. "
    "Do not translate, do not correct errors. Output only the transcribed text."
)


async def transcribe_image(llm: ChatModel, image_base64: str) -> Dict[str, str]:
    text = await llm.complete([vision_message(OCR_INSTRUCTION, [image_base64])], max_tokens=2000)
    return {"text": text}


# ---- Parse task from scanned pages ---- #
PARSE_TASK_INSTRUCTION = """You are looking at scanned pages of a German Abitur English mediation exam task.
Extract the following information and return it as JSON ONLY (no markdown fences, no extra text):

{
  "headline": "Title or topic of the German source text (if visible)",
  "article_text": "The complete German source text, transcribed exactly as written. Preserve paragraphs.",
  "task_instruction": "The complete English mediation task/instructions, transcribed exactly as written."
}

Rules:
- Transcribe the German text and English task EXACTLY as they appear. Do not translate or modify.
- If the text spans multiple pages/images, combine them in the correct order.
- Preserve paragraph breaks.
- If you cannot find a German source text or English task, set that field to an empty string.
- Return ONLY valid JSON."""


async def parse_task(llm: ChatModel, images: List[str]) -> Dict[str, str]:
    raw = await llm.complete([vision_message(PARSE_TASK_INSTRUCTION, images)], max_tokens=4000, temperature=0.2)
    parsed = extract_json(raw, PARSE_TASK_FIELDS)
    return {field: str(parsed.get(field) or "") for field in PARSE_TASK_FIELDS}


# ---- Model answer ---- #
MODEL_ANSWER_SYSTEM_PROMPT = """Du bist ein sehr guter Oberstufenschüler (Niveau B2/C1) an einem bayerischen Gymnasium.
Schreibe eine Musterlösung für die folgende Mediation-Aufgabe.

WICHTIGE REGELN:
- Schreibe auf ENGLISCH.
- Halte dich genau an die Aufgabenstellung (Textsorte, Adressat, geforderte Inhalte).
- Verwende Mediation-Strategien: Paraphrasiere den deutschen Quelltext, übersetze NICHT wörtlich.
- Passe Stil und Register an die Kommunikationssituation an.
- Strukturiere den Text logisch mit Einleitung, Hauptteil und Schluss.
- Zielumfang: ca. 200–280 Wörter (typisch für Abitur-Mediation).
- Der Text soll sprachlich sehr gut sein (Niveau 5-6 BE), aber noch authentisch als Schülerarbeit wirken, also nicht übertrieben akademisch.

Formatiere deine Antwort als Markdown:
1. Zuerst die Musterlösung als Fließtext
2. Dann unter "---" eine kurze Erklärung (3-5 Sätze auf Deutsch), welche Strategien verwendet wurden und warum bestimmte Entscheidungen getroffen wurden."""


async def write_model_answer(llm: ChatModel, source_text_de: str, task_en: str) -> Dict[str, str]:
    messages = [
        text_message("system", MODEL_ANSWER_SYSTEM_PROMPT),
        text_message("user", f"AUFGABENSTELLUNG:\n{task_en}\n\nDEUTSCHER QUELLTEXT:\n{source_text_de}"),
    ]
    answer = await llm.complete(messages)
    return {"model_answer": answer}

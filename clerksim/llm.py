"""
In-process AI gateway backed by LangChain chat models
"""
import logging
import os
from typing import Any, Dict, Optional

from langchain_anthropic import ChatAnthropic
from langchain_core.prompts import ChatPromptTemplate
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_ollama import ChatOllama
from langchain_openai import ChatOpenAI
from pydantic import BaseModel

from .config import ALL_MODELS, DEFAULT_MODEL, FREE_MODELS, MODEL_MAP, OSCE_DOMAINS, PROMPTS_DIR
from .errors import AIServiceError, QuotaExceededError, RateLimitError, SimulatorError
from .gateway import OPERATIONS, OperationGateway, parse_response

logger = logging.getLogger(__name__)

QUOTA_MESSAGE = "QUOTA_EXCEEDED: You have exceeded your daily quota. Please try again tomorrow."

DEFAULT_PROMPTS: Dict[str, str] = {
    "generate-case": (
        "You are a senior clinician writing a realistic clerking case for a medical student.\n"
        "Create a case matching this request (department, difficulty, optional condition or custom description):\n"
        "{payload}\n\n"
        "Return the diagnosis, the primary information the patient can reveal (one fact per line), "
        "the patient's opening line, and a patient or pediatric profile where relevant."
    ),
    "patient-turn": (
        "You are role-playing a patient (or the parent of a pediatric patient) being clerked by a medical student.\n"
        "Stay in character, answer only what is asked, and never reveal the diagnosis.\n"
        "Case, essential information and recent conversation:\n{payload}\n\n"
        "Reply with one or more messages, labelling each speaker when more than one person answers."
    ),
    "examination-results": (
        "Generate examination findings consistent with the case for the student's examination plan.\n"
        "{payload}\n\n"
        "Use quantitative results (value, unit, reference range) for measurements and descriptive results otherwise."
    ),
    "investigation-results": (
        "Generate investigation results consistent with the case for the student's investigation plan.\n"
        "{payload}\n\n"
        "Use quantitative results (value, unit, reference range) for laboratory values and descriptive reports for imaging."
    ),
    "feedback": (
        "Give concise consultant feedback on this clerking encounter.\n{payload}"
    ),
    "detailed-feedback": (
        "Write consultant teaching notes for this clerking encounter, covering clerking structure, "
        "missed opportunities with their clinical significance, reasoning, communication and pearls.\n{payload}"
    ),
    "comprehensive-feedback": (
        "Write comprehensive feedback on this completed case, including clinical reasoning, "
        "areas for improvement, missed opportunities and clinical pearls.\n{payload}"
    ),
    "case-report": (
        "Write a structured case report (patient information, examination, investigations, "
        "assessment, management, learning points) for this completed case.\n{payload}"
    ),
    "osce-followup-questions": (
        "Write exactly 10 OSCE follow-up questions for this station, numbered 1 to 10, spread across "
        + ", ".join(OSCE_DOMAINS) + ".\n{payload}"
    ),
    "osce-evaluation": (
        "Score this OSCE station: history coverage, relevance of questions, clinical reasoning, "
        "follow-up answers and an overall score, with rationale and clinical pearls.\n{payload}"
    ),
}


def load_prompt(operation: str) -> str:
    """Load prompt template from file, falling back to the built-in one."""
    filepath = os.path.join(PROMPTS_DIR, f"{operation}.txt")
    try:
        with open(filepath, "r", encoding="utf-8") as f:
            return f.read()
    except FileNotFoundError:
        logger.debug(f"Prompt file {filepath} not found. Using default.")
        return DEFAULT_PROMPTS[operation]


def get_llm(model_name: str, temperature: float = 0.7):
    """Initialize chat model with proper API key configuration."""
    model_id = MODEL_MAP.get(model_name, "llama3.2:latest")

    if model_name in FREE_MODELS:
        return ChatOllama(model=model_id, temperature=temperature)
    elif model_name == "GPT-4o":
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ValueError("OPENAI_API_KEY not found in environment. Please check your .env file.")
        return ChatOpenAI(model=model_id, temperature=temperature, api_key=api_key)
    elif model_name == "Gemini 2.5 Pro":
        api_key = os.getenv("GOOGLE_API_KEY")
        if not api_key:
            raise ValueError("GOOGLE_API_KEY not found in environment. Please check your .env file.")
        return ChatGoogleGenerativeAI(model=model_id, temperature=temperature, google_api_key=api_key)
    elif model_name == "Claude 3.5 Sonnet":
        api_key = os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            raise ValueError("ANTHROPIC_API_KEY not found in environment. Please check your .env file.")
        return ChatAnthropic(model=model_id, temperature=temperature, api_key=api_key)
    else:
        return ChatOllama(model="llama3.2:latest", temperature=temperature)


def _status_code(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(getattr(error, "response", None), "status_code", None)
    return status if isinstance(status, int) else None


def classify_provider_error(error: BaseException) -> SimulatorError:
    """Translate a provider SDK exception into the simulator's error taxonomy."""
    text = str(error)
    lowered = text.lower()
    status = _status_code(error)

    if "quota" in lowered or "resource_exhausted" in lowered:
        return QuotaExceededError(QUOTA_MESSAGE, status_code=429)
    if status == 429 or "rate limit" in lowered or "429" in text:
        return RateLimitError(text)
    if isinstance(error, ValueError):
        return AIServiceError(text, status_code=500)
    return AIServiceError(text, status_code=status or 502)


class LangChainGateway(OperationGateway):
    def __init__(self, model_name: str = DEFAULT_MODEL, temperature: float = 0.7):
        if model_name not in ALL_MODELS:
            raise ValueError(f"Unknown model {model_name!r}. Available models: {', '.join(ALL_MODELS)}")
        self.model_name = model_name
        self.temperature = temperature

    async def call(self, operation: str, request: BaseModel) -> BaseModel:
        response_model = OPERATIONS[operation].response_model
        prompt = ChatPromptTemplate.from_template(load_prompt(operation))

        try:
            llm = get_llm(self.model_name, self.temperature)
            chain = prompt | llm.with_structured_output(response_model)
            result: Any = await chain.ainvoke({"payload": request.model_dump_json(indent=2)})
        except SimulatorError:
            raise
        except Exception as e:
            logger.error(f"{self.model_name} failed on {operation}: {e}")
            raise classify_provider_error(e) from e

        if isinstance(result, BaseModel):
            result = result.model_dump()
        return parse_response(operation, result, response_model)

import os
import logging
from typing import Optional, Dict, Any
from jinja2 import Environment, FileSystemLoader

from voice_interview.core.config import settings
from voice_interview.models.session import CallContext, InterviewerPersona

logger = logging.getLogger(__name__)

template_dir = os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates")
env = Environment(loader=FileSystemLoader(template_dir))

DEFAULT_LANGUAGE = "en-US"

# code -> (native name, English name)
SUPPORTED_LANGUAGES = {
    "en-US": ("English", "English"),
    "pt-BR": ("Português", "Portuguese"),
    "es-ES": ("Español", "Spanish"),
    "fr-FR": ("Français", "French"),
    "de-DE": ("Deutsch", "German"),
    "zh-CN": ("中文", "Chinese"),
    "hi-IN": ("हिन्दी", "Hindi"),
    "ru-RU": ("Русский", "Russian"),
}

GREETINGS = {
    "en-US": (
        "Hello {candidate_name}! I'm {persona_name}, and I'll be your interviewer today for the {job_title} "
        "position at {company_name}. This session will take about {max_minutes} minutes. "
        "Let's begin. Can you tell me a little about your professional background?"
    ),
    "pt-BR": (
        "Olá {candidate_name}! Eu sou {persona_name} e serei seu entrevistador hoje para a vaga de {job_title} "
        "na {company_name}. Esta sessão levará cerca de {max_minutes} minutos. "
        "Vamos começar. Pode me contar um pouco sobre sua trajetória profissional?"
    ),
    "es-ES": (
        "¡Hola {candidate_name}! Soy {persona_name} y hoy seré tu entrevistador para el puesto de {job_title} "
        "en {company_name}. Esta sesión durará unos {max_minutes} minutos. "
        "Empecemos. ¿Puedes contarme un poco sobre tu trayectoria profesional?"
    ),
    "fr-FR": (
        "Bonjour {candidate_name} ! Je suis {persona_name} et je serai votre intervieweur aujourd'hui pour le poste "
        "de {job_title} chez {company_name}. Cette session durera environ {max_minutes} minutes. "
        "Commençons. Pouvez-vous me parler de votre parcours professionnel ?"
    ),
    "de-DE": (
        "Hallo {candidate_name}! Ich bin {persona_name} und führe heute Ihr Interview für die Position {job_title} "
        "bei {company_name}. Diese Sitzung dauert etwa {max_minutes} Minuten. "
        "Fangen wir an. Können Sie mir etwas über Ihren beruflichen Werdegang erzählen?"
    ),
    "zh-CN": (
        "你好，{candidate_name}！我是{persona_name}，今天将担任你应聘{company_name}{job_title}职位的面试官。"
        "本次面试大约需要{max_minutes}分钟。我们开始吧，能先介绍一下你的职业背景吗？"
    ),
    "hi-IN": (
        "नमस्ते {candidate_name}! मैं {persona_name} हूँ, और आज {company_name} में {job_title} पद के लिए आपका इंटरव्यू लूँगा। "
        "यह सत्र लगभग {max_minutes} मिनट का होगा। चलिए शुरू करते हैं। क्या आप अपने पेशेवर अनुभव के बारे में बता सकते हैं?"
    ),
    "ru-RU": (
        "Здравствуйте, {candidate_name}! Меня зовут {persona_name}, и сегодня я проведу с вами собеседование на позицию "
        "{job_title} в компании {company_name}. Сессия займёт около {max_minutes} минут. "
        "Давайте начнём. Расскажите, пожалуйста, о своём профессиональном опыте."
    ),
}

def is_supported_language(code: Optional[str]) -> bool:
    return code in SUPPORTED_LANGUAGES

def live_language_tag(metadata: Dict[str, Any]) -> Optional[str]:
    """Language tag carried by the handshake, wherever the transport put it"""
    if not metadata:
        return None
    language_config = metadata.get("language_config")
    if isinstance(language_config, dict) and language_config.get("code"):
        config_code = language_config.get("code")
    else:
        config_code = None
    return metadata.get("preferred_language") or config_code or metadata.get("language_code")

def resolve_language(live_tag: Optional[str], stored_language: Optional[str]) -> str:
    """Live handshake tag if supported, else the stored context language, else en-US"""
    if is_supported_language(live_tag):
        return live_tag
    if is_supported_language(stored_language):
        return stored_language
    return DEFAULT_LANGUAGE

def select_persona(language: str) -> InterviewerPersona:
    """zh-CN uses its dedicated agent when one is configured; everything else shares the default"""
    if language == "zh-CN" and settings.RETELL_AGENT_ID_ZH:
        return InterviewerPersona(agent_id=settings.RETELL_AGENT_ID_ZH, dedicated=True)
    return InterviewerPersona(agent_id=settings.RETELL_AGENT_ID, dedicated=False)

class InterviewPromptBuilder:
    def __init__(self, max_minutes: Optional[int] = None):
        self.max_minutes = max_minutes or settings.MAX_INTERVIEW_DURATION_MINUTES

    def build_system_prompt(self, context: CallContext, language: str, persona: InterviewerPersona) -> str:
        native_name, english_name = SUPPORTED_LANGUAGES.get(language, SUPPORTED_LANGUAGES[DEFAULT_LANGUAGE])
        template = env.get_template("interviewer_system.j2")
        return template.render(
            persona_name=persona.name,
            language_code=language,
            language_name=native_name,
            language_english_name=english_name,
            candidate_name=context.candidate_name or "the candidate",
            job_title=context.job_title or "Position",
            company_name=context.company_name or "the company",
            job_description=context.job_description,
            resume=context.resume_text,
            max_minutes=self.max_minutes,
        ).strip()

    def build_greeting(self, context: CallContext, language: str, persona: InterviewerPersona) -> str:
        greeting = GREETINGS.get(language, GREETINGS[DEFAULT_LANGUAGE])
        return greeting.format(
            candidate_name=context.candidate_name or "there",
            persona_name=persona.name,
            job_title=context.job_title or "this position",
            company_name=context.company_name or "your target company",
            max_minutes=self.max_minutes,
        )

"""
Keyword based tool selection for the admin assistant.

A query is scored against static category tables (Russian keywords, since the
librarians talk to the assistant in Russian) and a phrase table that points at
individual tools. The result is the smallest tool set worth sending to the LLM.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Any, Dict, Iterable, List, Optional

from libdesk.assistant.tool_catalog import Tool
from libdesk.services.cache_manager import CacheManager

logger = logging.getLogger(__name__)


class UserLevel(IntEnum):
    NOVICE = 1
    INTERMEDIATE = 2
    EXPERT = 3


@dataclass
class ToolCategory:
    id: str
    name: str
    description: str
    icon: str
    keywords: List[str]
    priority: int
    tools: List[str]
    min_user_level: int = UserLevel.NOVICE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "keywords": list(self.keywords),
            "priority": self.priority,
            "tools": list(self.tools),
            "min_user_level": int(self.min_user_level),
        }


# Dropped when a query mentions several entity kinds at once
ENTITY_MODIFICATION_TOOLS = (
    "createUser", "createBook", "createReservation",
    "updateUser", "updateBook", "updateReservation",
    "deleteUser", "deleteBook", "deleteReservation",
    "createBookInstance", "updateBookInstance", "deleteBookInstance",
    "assignRoleToUser", "removeRoleFromUser", "updateUserRole",
)

# Dropped unless the query talks about passwords
PASSWORD_TOOLS = ("changeUserPassword", "resetUserPassword")

FINAL_RESPONSE_TOOLS = (
    "searchUsers", "searchBooks", "searchReservations",
    "getUserById", "getBookById", "getReservationById",
    "getAllUsers", "getAllBooks", "getAllReservations",
    "systemContext", "navigateToPage", "stopAgent", "cancelCurrentAction",
)
FINAL_RESPONSE_LIMIT = 8

TOOL_CATEGORIES: List[ToolCategory] = [
    ToolCategory(
        id="users",
        name="Пользователи",
        description="Управление пользователями библиотеки",
        icon="👤",
        keywords=[
            "пользователь", "юзер", "клиент", "читатель", "студент", "человек", "люди",
            "пользователя", "пользователю", "пользователем", "пользователях", "пользователей",
            "создать пользователя", "добавить пользователя", "зарегистрировать",
            "найти пользователя", "показать пользователей", "список пользователей",
            "обновить пользователя", "изменить пользователя", "удалить пользователя",
            "профиль", "аккаунт", "регистрация", "авторизация", "рекомендации",
            "пароль", "сброс пароля", "изменить пароль", "штраф", "активность",
            "с книгами", "с просрочками", "активные резервирования", "просроченные",
            "статистика пользователей", "отчет по пользователям", "график пользователей",
            "кто", "какой пользователь", "показать людей",
        ],
        priority=1,
        tools=[
            "getAllUsers", "getUserById", "searchUsers", "createUser", "updateUser", "deleteUser",
            "changeUserPassword", "resetUserPassword", "getUserReservations", "getUserActiveReservations",
            "getUserOverdueReservations", "getUserRecommendations", "getUsersWithBooks",
            "getUsersWithFines", "getUserStatistics",
        ],
    ),
    ToolCategory(
        id="books",
        name="Книги",
        description="Управление каталогом книг",
        icon="📚",
        keywords=[
            "книга", "книги", "литература", "издание", "том", "экземпляр", "каталог",
            "книгу", "книге", "книгой", "книгам", "книгами",
            "добавить книгу", "создать книгу", "новая книга", "загрузить книгу",
            "найти книгу", "поиск книг", "показать книги", "список книг", "каталог книг",
            "обновить книгу", "изменить книгу", "удалить книгу",
            "автор", "название", "жанр", "ISBN", "издательство", "год издания",
            "доступность", "экземпляры", "копии", "полка", "позиция", "состояние",
            "избранное", "рекомендации", "популярные", "статистика", "фонд",
            "статистика книг", "отчет по книгам", "график книг", "топ книг", "популярные книги",
            "что почитать", "найди книгу", "покажи книги",
        ],
        priority=1,
        tools=[
            "getAllBooks", "getBookById", "searchBooks", "createBook", "updateBook", "deleteBook",
            "updateBookGenre", "updateBookCategorization", "addBookToFavorites", "removeBookFromFavorites",
            "getBookAvailability", "getBestAvailableBookInstance", "getAllBookInstances",
            "getBookInstanceById", "getBookInstancesByBookId", "createBookInstance", "updateBookInstance",
            "deleteBookInstance", "updateBookInstanceStatus", "getBookInstanceStats",
            "createMultipleBookInstances", "autoCreateBookInstances", "getBookInstanceReservation",
            "getInstanceStatusSummary", "bulkCreateBookInstances", "bulkUpdateBookInstanceStatuses",
            "getBookStatistics", "getTopPopularBooks",
        ],
    ),
    ToolCategory(
        id="reservations",
        name="Резервирования",
        description="Управление бронированием и выдачей книг",
        icon="📅",
        keywords=[
            "резерв", "бронь", "бронирование", "резервирование", "заказ", "запрос",
            "резервирования", "резервированию", "резервированием", "резервированиях",
            "брони", "бронью",
            "забронировать", "зарезервировать", "заказать книгу", "взять книгу",
            "выдать книгу", "вернуть книгу", "продлить", "продление",
            "одобрить", "отклонить", "отменить", "статус", "срок",
            "просрочка", "штраф", "история выдач", "активные брони",
            "даты", "период", "массовое обновление", "просроченные",
            "статистика резервирований", "отчет по резервированиям", "график резервирований",
            "выдача", "возврат", "кто взял", "когда вернуть",
        ],
        priority=1,
        tools=[
            "getAllReservations", "getReservationById", "searchReservations", "createReservation",
            "updateReservation", "deleteReservation", "getReservationDates", "getReservationDatesByBookId",
            "getReservationsByUserId", "bulkUpdateReservations", "getOverdueReservations",
            "getReservationStatistics",
        ],
    ),
    ToolCategory(
        id="roles",
        name="Роли и права",
        description="Управление ролями пользователей",
        icon="👥",
        keywords=[
            "роль", "права", "доступ", "разрешения", "администратор", "библиотекарь",
            "назначить роль", "изменить роль", "права доступа", "полномочия",
            "группа", "статус пользователя", "уровень доступа", "удалить роль",
            "массовое назначение", "обновление ролей", "админ", "модератор",
        ],
        priority=3,
        tools=[
            "getAllRoles", "assignRoleToUser", "assignRoleToMultipleUsers", "updateUserRole",
            "removeRoleFromUser", "removeRoleFromMultipleUsers",
        ],
        min_user_level=UserLevel.INTERMEDIATE,
    ),
    ToolCategory(
        id="reports",
        name="Отчеты и аналитика",
        description="Создание отчетов и графиков",
        icon="📊",
        keywords=[
            "отчет", "статистика", "график", "диаграмма", "аналитика", "данные",
            "построить график", "создать отчет", "показать статистику",
            "анализ", "метрики", "KPI", "дашборд", "визуализация",
            "тренды", "динамика", "сводка", "сводный отчет", "популярные",
            "пользователи", "книги", "резервирования", "период", "группировка",
            "html отчет", "сгенерировать отчет", "excel отчет", "pdf отчет",
            "сколько", "когда", "где", "статистика по", "отчетность",
        ],
        priority=2,
        tools=[
            "getUserStatistics", "getReservationStatistics", "getBookStatistics", "getTopPopularBooks",
            "getAllUsers", "getAllBooks", "getAllReservations", "searchUsers", "searchBooks",
            "getUserReservations", "getBookAvailability", "getOverdueReservations",
        ],
    ),
    ToolCategory(
        id="notifications",
        name="Уведомления",
        description="Отправка уведомлений пользователям",
        icon="🔔",
        keywords=[
            "уведомление", "уведомления", "push", "email", "сообщение",
            "отправить", "оповестить", "информировать", "алерт", "предупреждение",
            "шаблон", "кастомное", "массовая рассылка", "тип уведомления",
            "напомнить", "напоминание", "письмо", "смс",
        ],
        priority=4,
        tools=["sendCustomPushNotification", "sendCustomSingleEmail", "sendCustomEmailWithTemplate"],
        min_user_level=UserLevel.INTERMEDIATE,
    ),
    ToolCategory(
        id="history",
        name="История диалогов",
        description="Работа с историей диалогов ИИ-ассистента",
        icon="📝",
        keywords=[
            "история", "диалог", "чат", "сообщения", "поиск в истории",
            "конверсация", "разговор", "логи", "архив", "прошлые запросы",
            "что мы говорили", "найти разговор", "когда говорили",
        ],
        priority=5,
        tools=["getAllDialogHistory", "getDialogHistoryByConversationId", "searchDialogHistory"],
        min_user_level=UserLevel.INTERMEDIATE,
    ),
    ToolCategory(
        id="navigation",
        name="Навигация",
        description="Переходы между страницами",
        icon="🧭",
        keywords=[
            "перейти", "открыть страницу", "показать страницу", "навигация",
            "страница", "раздел", "меню", "переход", "ссылка", "URL",
            "главная", "каталог", "профиль", "настройки", "админка",
            "покажи", "открой", "веди на",
        ],
        priority=5,
        tools=["navigateToPage"],
    ),
    ToolCategory(
        id="system",
        name="Системные",
        description="Управление работой ассистента",
        icon="⚙️",
        keywords=[
            "стоп", "остановить", "отменить", "прервать", "отмена",
            "агент", "ассистент", "система", "сброс", "перезапуск",
            "контекст", "системный", "хватит", "довольно",
        ],
        priority=1,
        tools=["systemContext", "stopAgent", "cancelCurrentAction"],
    ),
    ToolCategory(
        id="advanced",
        name="Продвинутые",
        description="Продвинутые операции для экспертов",
        icon="🔧",
        keywords=[
            "массовое", "bulk", "пакетное", "автоматизация", "скрипт",
            "импорт", "экспорт", "миграция", "синхронизация", "backup",
            "API", "webhook", "интеграция", "кастомный", "advanced",
        ],
        priority=4,
        tools=[
            "bulkUpdateReservations", "bulkCreateBookInstances", "bulkUpdateBookInstanceStatuses",
            "createMultipleBookInstances", "autoCreateBookInstances", "assignRoleToMultipleUsers",
            "removeRoleFromMultipleUsers",
        ],
        min_user_level=UserLevel.EXPERT,
    ),
]

_CATEGORIES_BY_ID = {category.id: category for category in TOOL_CATEGORIES}

TOOL_PHRASE_MAPPINGS: Dict[str, List[str]] = {
    # users
    "создать пользователя": ["createUser"],
    "добавить пользователя": ["createUser"],
    "зарегистрировать пользователя": ["createUser"],
    "найти пользователя": ["searchUsers", "getUserById"],
    "показать пользователей": ["searchUsers"],
    "показать всех пользователей": ["getAllUsers"],
    "список пользователей": ["getAllUsers"],
    "все пользователи": ["getAllUsers"],
    "обновить пользователя": ["updateUser"],
    "изменить пользователя": ["updateUser"],
    "удалить пользователя": ["deleteUser"],
    "сменить пароль": ["changeUserPassword"],
    "сбросить пароль": ["resetUserPassword"],
    "резервирования пользователя": ["getUserReservations"],
    "активные резервирования пользователя": ["getUserActiveReservations"],
    "просроченные резервирования пользователя": ["getUserOverdueReservations"],
    "рекомендации для пользователя": ["getUserRecommendations"],
    "пользователи с книгами": ["getUsersWithBooks"],
    "пользователи со штрафами": ["getUsersWithFines"],
    "статистика пользователей": ["getUserStatistics"],

    # books
    "создать книгу": ["createBook"],
    "добавить книгу": ["createBook"],
    "новая книга": ["createBook"],
    "найти книгу": ["searchBooks", "getBookById"],
    "показать книги": ["searchBooks"],
    "показать все книги": ["getAllBooks"],
    "список книг": ["getAllBooks"],
    "все книги": ["getAllBooks"],
    "каталог книг": ["getAllBooks"],
    "обновить книгу": ["updateBook"],
    "изменить книгу": ["updateBook"],
    "удалить книгу": ["deleteBook"],
    "изменить жанр книги": ["updateBookGenre"],
    "категоризация книги": ["updateBookCategorization"],
    "добавить в избранное": ["addBookToFavorites"],
    "убрать из избранного": ["removeBookFromFavorites"],
    "доступность книги": ["getBookAvailability"],
    "лучший доступный экземпляр": ["getBestAvailableBookInstance"],
    "все экземпляры книги": ["getAllBookInstances"],
    "экземпляр книги": ["getBookInstanceById"],
    "экземпляры книги": ["getBookInstancesByBookId"],
    "создать экземпляр": ["createBookInstance"],
    "обновить экземпляр": ["updateBookInstance"],
    "удалить экземпляр": ["deleteBookInstance"],
    "изменить статус экземпляра": ["updateBookInstanceStatus"],
    "статистика экземпляров": ["getBookInstanceStats"],
    "создать несколько экземпляров": ["createMultipleBookInstances"],
    "автосоздание экземпляров": ["autoCreateBookInstances"],
    "резервирование экземпляра": ["getBookInstanceReservation"],
    "сводка статусов экземпляров": ["getInstanceStatusSummary"],
    "массовое создание экземпляров": ["bulkCreateBookInstances"],
    "массовое обновление статусов": ["bulkUpdateBookInstanceStatuses"],
    "статистика книг": ["getBookStatistics"],
    "топ популярных книг": ["getTopPopularBooks"],
    "популярные книги": ["getTopPopularBooks"],

    # reservations
    "создать резервирование": ["createReservation"],
    "создать бронирование": ["createReservation"],
    "создай резервирование": ["createReservation"],
    "создай бронирование": ["createReservation"],
    "забронировать книгу": ["createReservation"],
    "зарезервировать книгу": ["createReservation"],
    "найти резервирование": ["searchReservations", "getReservationById"],
    "показать резервирования": ["searchReservations"],
    "показать все резервирования": ["getAllReservations"],
    "список резервирований": ["getAllReservations"],
    "все резервирования": ["getAllReservations"],
    "обновить резервирование": ["updateReservation"],
    "изменить резервирование": ["updateReservation"],
    "удалить резервирование": ["deleteReservation"],
    "отменить резервирование": ["deleteReservation"],
    "даты резервирования": ["getReservationDates"],
    "даты резервирования книги": ["getReservationDatesByBookId"],
    "резервирования пользователя по id": ["getReservationsByUserId"],
    "массовое обновление резервирований": ["bulkUpdateReservations"],
    "просроченные резервирования": ["getOverdueReservations"],
    "статистика резервирований": ["getReservationStatistics"],

    # roles
    "назначить роль": ["assignRoleToUser"],
    "изменить роль": ["updateUserRole"],
    "удалить роль": ["removeRoleFromUser"],
    "массовое назначение ролей": ["assignRoleToMultipleUsers"],
    "массовое удаление ролей": ["removeRoleFromMultipleUsers"],

    # reports
    "создать отчет": ["getUserStatistics", "getReservationStatistics", "getBookStatistics"],
    "построить график": ["getUserStatistics", "getReservationStatistics", "getBookStatistics"],
    "статистика": ["getUserStatistics", "getReservationStatistics", "getBookStatistics"],
    "отчет": ["getUserStatistics", "getReservationStatistics", "getBookStatistics"],

    # navigation
    "перейти на страницу": ["navigateToPage"],
    "открыть страницу": ["navigateToPage"],
    "показать страницу": ["navigateToPage"],

    # system
    "остановить агента": ["stopAgent"],
    "отменить действие": ["cancelCurrentAction"],
    "системный контекст": ["systemContext"],
}

QUESTION_WORDS = ("что", "как", "где", "когда", "сколько", "кто", "какой", "какая", "какие", "почему")
ACTION_WORDS = ("создать", "добавить", "удалить", "изменить", "обновить", "назначить", "отправить")
REPORT_WORDS = ("отчет", "статистика", "график", "показать", "построить", "сгенерировать")
NAVIGATION_WORDS = ("перейти", "открыть", "показать страницу", "веди")

ENTITY_PATTERNS = {
    "users": ("пользовател", "юзер", "читател", "студент", "люди", "человек"),
    "books": ("книг", "литератур", "издани", "том", "каталог"),
    "reservations": ("резерв", "брон", "заказ", "выдач", "возврат"),
}

PASSWORD_PATTERNS = (
    "парол", "password", "сменить пароль", "изменить пароль", "сбросить пароль",
    "новый пароль", "старый пароль", "забыл пароль", "восстановить пароль",
    "обновить пароль", "установить пароль", "задать пароль",
)

TOOL_NAME_REPLACEMENTS = {
    "get": ("получить", "показать", "найти"),
    "create": ("создать", "добавить"),
    "update": ("обновить", "изменить"),
    "delete": ("удалить", "убрать"),
    "all": ("все", "всех"),
    "user": ("пользователь", "юзер"),
    "book": ("книга", "книги"),
    "reservation": ("резервирование", "бронь"),
}

# Markers the chat client writes into messages that ran a tool
TOOL_EXECUTION_MARKERS = ("Думаю, нужно вызвать инструмент", "⚡", "📚", "👤", "📅")

BASIC_CATEGORIES = ["users", "books", "reservations"]

_ENTITY_RE = re.compile(r"\b(пользовател|книг|резервирован)\w*\b")
_DATE_RANGE_RE = re.compile(r"\b(за\s+\w+|с\s+\d+|до\s+\d+|между\s+\d+)\b")
_CONDITION_RE = re.compile(r"\b(если|когда|где|с условием)\b")
_ACTION_RE = re.compile(r"\b(создать|добавить|удалить|изменить|обновить|назначить)\b")

ANALYSIS_CACHE_TTL = 30 * 60
SELECTION_CACHE_TTL = 10 * 60

_analysis_cache = CacheManager(namespace="tool-analysis", use_redis=False)
_selection_cache = CacheManager(namespace="tool-selection", use_redis=False)


@dataclass
class SelectionConfig:
    max_tools_per_request: int = 20
    always_include_categories: List[str] = field(default_factory=lambda: ["system"])
    contextual_selection: bool = True
    user_level: int = UserLevel.INTERMEDIATE
    preferred_categories: List[str] = field(default_factory=list)
    excluded_categories: List[str] = field(default_factory=list)
    is_final_response: bool = False
    has_tool_executions: bool = False
    has_multiple_entities: bool = False
    has_password_mention: bool = False
    append_to_existing: bool = False
    existing_tools: List[Tool] = field(default_factory=list)


@dataclass
class ExecutionContext:
    has_executed_tools: bool = False
    executed_tool_names: List[str] = field(default_factory=list)
    last_iteration_had_tools: bool = False
    iteration_count: int = 0
    is_likely_final_response: bool = False


@dataclass
class QueryAnalysis:
    detected_categories: List[str]
    detected_tools: List[str]
    confidence: Dict[str, int]
    suggested_categories: List[str]
    intent_type: str
    complexity: str
    has_multiple_entities: bool
    entity_types: List[str]
    has_password_mention: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detected_categories": list(self.detected_categories),
            "detected_tools": list(self.detected_tools),
            "confidence": dict(self.confidence),
            "suggested_categories": list(self.suggested_categories),
            "intent_type": self.intent_type,
            "complexity": self.complexity,
            "has_multiple_entities": self.has_multiple_entities,
            "entity_types": list(self.entity_types),
            "has_password_mention": self.has_password_mention,
        }


@dataclass
class ToolSelection:
    selected_tools: List[Tool]
    analysis: QueryAnalysis
    used_categories: List[str]


def _unique(items: Iterable[str]) -> List[str]:
    seen = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


def get_category(category_id: str) -> Optional[ToolCategory]:
    return _CATEGORIES_BY_ID.get(category_id)


def categories_for_level(user_level: int) -> List[ToolCategory]:
    return [category for category in TOOL_CATEGORIES if category.min_user_level <= user_level]


def detect_entities(query: str) -> List[str]:
    normalized = query.lower()
    return [name for name, patterns in ENTITY_PATTERNS.items()
            if any(pattern in normalized for pattern in patterns)]


def has_password_mention(query: str) -> bool:
    normalized = query.lower()
    return any(pattern in normalized for pattern in PASSWORD_PATTERNS)


def detect_intent(normalized_query: str) -> str:
    if any(word in normalized_query for word in QUESTION_WORDS):
        return "question"
    if any(word in normalized_query for word in REPORT_WORDS):
        return "report"
    if any(word in normalized_query for word in NAVIGATION_WORDS):
        return "navigation"
    return "action"


def get_query_complexity(normalized_query: str) -> str:
    """Rate a query simple, medium or complex by length and the constructs it uses."""
    words = len(normalized_query.split())
    multiple_entities = len(_ENTITY_RE.findall(normalized_query)) > 1
    date_ranges = bool(_DATE_RANGE_RE.search(normalized_query))
    conditions = bool(_CONDITION_RE.search(normalized_query))
    actions = bool(_ACTION_RE.search(normalized_query))

    if words <= 8 and not (multiple_entities or actions or date_ranges or conditions):
        return "simple"
    if words > 15 or date_ranges or conditions or (multiple_entities and actions):
        return "complex"
    return "medium"


def tool_name_variants(tool_name: str) -> List[str]:
    """The tool name, its spaced form and the spaced form with one word translated."""
    readable = re.sub(r"([A-Z])", r" \1", tool_name).strip().lower()
    variants = [tool_name, readable]
    for english, translations in TOOL_NAME_REPLACEMENTS.items():
        if english in readable:
            variants.extend(readable.replace(english, russian, 1) for russian in translations)
    return variants


def _mentions_tool(normalized_query: str, tool_name: str) -> bool:
    return any(variant.lower() in normalized_query for variant in tool_name_variants(tool_name))


def _suggest_categories(detected: List[str], normalized_query: str, intent_type: str,
                        user_level: int) -> List[str]:
    available = [category.id for category in categories_for_level(user_level)]
    suggestions = []

    if "reservations" in detected:
        for related in ("users", "books"):
            if related not in detected and related in available:
                suggestions.append(related)

    if "users" in detected and ("роль" in normalized_query or "права" in normalized_query):
        if "roles" in available and "roles" not in detected:
            suggestions.append("roles")

    if intent_type == "report" and "reports" not in detected and "reports" in available:
        suggestions.append("reports")
    if intent_type == "navigation" and "navigation" not in detected and "navigation" in available:
        suggestions.append("navigation")

    if user_level == UserLevel.NOVICE and not detected:
        return [category for category in BASIC_CATEGORIES if category in available]

    return [category for category in suggestions if category in available]


def analyze_query(query: str, user_level: int = UserLevel.INTERMEDIATE) -> QueryAnalysis:
    """Score a query against the category and phrase tables."""
    cache_key = f"{query.lower().strip()}_{int(user_level)}"
    cached = _analysis_cache.get(cache_key)
    if cached is not None:
        logger.debug("Query analysis cache hit: %.50s", query)
        return cached

    normalized = query.lower().strip()
    detected_tools: List[str] = []
    confidence: Dict[str, int] = {}
    detected_categories: List[str] = []

    for phrase, tools in TOOL_PHRASE_MAPPINGS.items():
        if phrase.lower() in normalized:
            detected_tools.extend(tool for tool in tools if tool not in detected_tools)

    intent_type = detect_intent(normalized)
    complexity = get_query_complexity(normalized)

    for category in categories_for_level(user_level):
        score = 0
        matches = 0
        for keyword in category.keywords:
            if keyword.lower() in normalized:
                score += len(keyword.split(" "))
                matches += 1
        for tool_name in category.tools:
            if tool_name.lower() in normalized or _mentions_tool(normalized, tool_name):
                score += 2
                matches += 1
                if tool_name not in detected_tools:
                    detected_tools.append(tool_name)
        if intent_type == "report" and category.id == "reports":
            score += 1
        if intent_type == "navigation" and category.id == "navigation":
            score += 1
        if matches:
            confidence[category.id] = score
            detected_categories.append(category.id)

    detected_categories.sort(key=lambda category_id: confidence.get(category_id, 0), reverse=True)
    entities = detect_entities(query)

    analysis = QueryAnalysis(
        detected_categories=detected_categories,
        detected_tools=detected_tools,
        confidence=confidence,
        suggested_categories=_suggest_categories(detected_categories, normalized, intent_type, user_level),
        intent_type=intent_type,
        complexity=complexity,
        has_multiple_entities=len(entities) >= 2,
        entity_types=entities,
        has_password_mention=has_password_mention(query),
    )
    _analysis_cache.set(cache_key, analysis, ttl_seconds=ANALYSIS_CACHE_TTL)
    return analysis


def analyze_execution_context(history: List[Dict[str, Any]], current_iteration: int = 0) -> ExecutionContext:
    """Work out from recent chat messages whether the next answer is likely the final one.

    Each message is a dict with ``content`` and, for messages that ran a tool,
    ``api_call`` holding the called ``endpoint``.
    """
    recent = history[-10:]

    def ran_tool(message: Dict[str, Any]) -> bool:
        content = message.get("content") or ""
        return bool(message.get("api_call")) or any(marker in content for marker in TOOL_EXECUTION_MARKERS)

    has_executed = any(ran_tool(message) for message in recent)
    executed_names = [message["api_call"]["endpoint"] for message in recent
                      if message.get("api_call") and message["api_call"].get("endpoint")]
    last_had_tools = bool(recent) and recent[-1].get("api_call") is not None

    return ExecutionContext(
        has_executed_tools=has_executed,
        executed_tool_names=executed_names,
        last_iteration_had_tools=last_had_tools,
        iteration_count=current_iteration,
        is_likely_final_response=(has_executed and not last_had_tools and current_iteration > 0
                                  and bool(executed_names)),
    )


def filter_tools(all_tools: List[Tool], categories: List[str], specific_tools: Optional[List[str]] = None,
                 config: Optional[SelectionConfig] = None,
                 context: Optional[ExecutionContext] = None) -> List[Tool]:
    config = config or SelectionConfig()
    specific_tools = specific_tools or []

    final_response = config.is_final_response or (context is not None and context.is_likely_final_response)
    if final_response and "navigation" not in categories and "system" not in categories:
        final_tools = [tool for tool in all_tools
                       if tool.name in FINAL_RESPONSE_TOOLS or tool.name in specific_tools]
        logger.debug("Final response: %d of %d tools", len(final_tools), len(all_tools))
        return final_tools[:min(FINAL_RESPONSE_LIMIT, config.max_tools_per_request)]

    available = categories_for_level(config.user_level)
    available_ids = {category.id for category in available}
    include = set(categories) | {category for category in config.always_include_categories
                                 if category in available_ids}
    include -= set(config.excluded_categories)

    names = set()
    available_tool_names = set()
    for category in available:
        available_tool_names.update(category.tools)
        if category.id in include:
            names.update(category.tools)
    names.update(tool for tool in specific_tools if tool in available_tool_names)

    tools = [tool for tool in all_tools if tool.name in names]

    if config.has_multiple_entities:
        before = len(tools)
        tools = [tool for tool in tools
                 if tool.name not in ENTITY_MODIFICATION_TOOLS or tool.name == "createReservation"]
        logger.debug("Several entities in query, dropped %d CRUD tools", before - len(tools))

    if not config.has_password_mention:
        tools = [tool for tool in tools if tool.name not in PASSWORD_TOOLS]

    if len(tools) > config.max_tools_per_request:
        priorities: Dict[str, int] = {}
        for category in available:
            for tool_name in category.tools:
                priorities[tool_name] = min(priorities.get(tool_name, category.priority), category.priority)
        tools.sort(key=lambda tool: (0 if tool.name in specific_tools else 1, priorities.get(tool.name, 999)))
        tools = tools[:config.max_tools_per_request]

    return tools


def _selection_key(query: str, config: SelectionConfig, context: Optional[ExecutionContext]) -> str:
    context_part = ""
    if context is not None:
        context_part = f"{context.has_executed_tools}:{context.iteration_count}:{context.is_likely_final_response}"
    append_part = ""
    if config.append_to_existing:
        append_part = "_append_" + ",".join(tool.name for tool in config.existing_tools)
    return (f"{query.lower().strip()}_{int(config.user_level)}_{config.max_tools_per_request}_"
            f"{int(config.is_final_response)}_"
            f"{context_part}{append_part}")


def _dynamic_limit(complexity: str, categories: List[str], config: SelectionConfig) -> int:
    if config.is_final_response:
        return 6
    if complexity == "simple":
        return 4 if len(categories) <= 1 else 6
    if complexity == "medium":
        return 8 if config.has_multiple_entities else 10
    return 15


def default_categories(query: str, user_level: int) -> List[str]:
    """Categories sent when nothing in the query matched the tables; empty for short small talk."""
    has_keywords = any(keyword in query for category in TOOL_CATEGORIES for keyword in category.keywords)
    if not (has_keywords or len(query) > 10):
        return []
    categories = list(BASIC_CATEGORIES)
    if user_level != UserLevel.NOVICE:
        categories.append("reports")
    return categories


def select_tools(query: str, all_tools: List[Tool], config: Optional[SelectionConfig] = None,
                 context: Optional[ExecutionContext] = None) -> ToolSelection:
    """Pick the tools to send along with a query."""
    config = config or SelectionConfig()
    cache_key = _selection_key(query, config, context)
    cached = _selection_cache.get(cache_key)
    if cached is not None:
        logger.debug("Tool selection cache hit: %.50s", query)
        return cached

    analysis = analyze_query(query, config.user_level)
    categories = list(analysis.detected_categories)
    specific = list(analysis.detected_tools)

    config = replace(
        config,
        has_tool_executions=context.has_executed_tools if context else False,
        is_final_response=config.is_final_response or bool(context and context.is_likely_final_response),
        has_multiple_entities=config.has_multiple_entities or analysis.has_multiple_entities,
        has_password_mention=config.has_password_mention or analysis.has_password_mention,
    )

    if config.append_to_existing and config.existing_tools:
        existing_names = [tool.name for tool in config.existing_tools]
        specific = _unique(existing_names + specific)
        existing_categories = [category.id for category in TOOL_CATEGORIES
                               if any(name in category.tools for name in existing_names)]
        categories = _unique(existing_categories + categories)

    if not analysis.detected_categories and not analysis.detected_tools:
        categories = []
    elif analysis.intent_type == "navigation" and analysis.complexity == "simple":
        categories = ["navigation"]
    else:
        categories = _unique(categories + analysis.suggested_categories)
        for category_id, search_tool in (("users", "searchUsers"), ("books", "searchBooks"),
                                         ("reservations", "searchReservations")):
            if category_id in categories and search_tool not in specific:
                specific.append(search_tool)

    if not categories and not specific:
        categories = default_categories(query, config.user_level)

    categories = _unique(categories + config.preferred_categories)

    config = replace(config, max_tools_per_request=_dynamic_limit(analysis.complexity, categories, config))
    selected = filter_tools(all_tools, categories, specific, config, context)

    selected_names = {tool.name for tool in selected}
    used = [category.id for category in TOOL_CATEGORIES if selected_names & set(category.tools)]
    selection = ToolSelection(selected_tools=selected, analysis=analysis, used_categories=used)
    _selection_cache.set(cache_key, selection, ttl_seconds=SELECTION_CACHE_TTL)
    return selection


def get_tool_usage_stats(selected_tools: List[Tool], all_tools: List[Tool]) -> Dict[str, Any]:
    selected_names = {tool.name for tool in selected_tools}
    categories_used = [category.id for category in TOOL_CATEGORIES if selected_names & set(category.tools)]
    reduction = 0
    if all_tools:
        reduction = int((1 - len(selected_tools) / len(all_tools)) * 100 + 0.5)
    return {
        "total_tools": len(all_tools),
        "selected_count": len(selected_tools),
        "reduction_percentage": reduction,
        "categories_used": categories_used,
        "efficiency_score": min(100, reduction + len(categories_used) * 5),
    }


INTENT_LABELS = {"question": "Вопрос", "action": "Действие", "report": "Отчет", "navigation": "Навигация"}
COMPLEXITY_LABELS = {"simple": "простой", "medium": "средний", "complex": "сложный"}


def _category_names(category_ids: Iterable[str]) -> str:
    return ", ".join(_CATEGORIES_BY_ID[category_id].name for category_id in category_ids
                     if category_id in _CATEGORIES_BY_ID)


def create_selection_summary(analysis: QueryAnalysis, used_categories: List[str],
                             stats: Dict[str, Any]) -> str:
    """One line description of a selection for the chat UI."""
    intent = INTENT_LABELS.get(analysis.intent_type, "Запрос")
    complexity = COMPLEXITY_LABELS.get(analysis.complexity, "обычный")
    if analysis.detected_categories:
        detected = f"Обнаружены: {_category_names(analysis.detected_categories)}"
    else:
        detected = "Используется базовый набор"
    specific = ""
    if analysis.detected_tools:
        specific = f" (+ {len(analysis.detected_tools)} конкретных инструментов)"

    optimization = ""
    if analysis.has_multiple_entities:
        optimization += " CRUD исключены для множественных сущностей."
    if not analysis.has_password_mention:
        optimization += " Инструменты паролей исключены."

    return (f"{intent} ({complexity}). {detected}{specific}.{optimization} "
            f"Отправлено {stats['selected_count']}/{stats['total_tools']} инструментов "
            f"(-{stats['reduction_percentage']}%). Категории: {_category_names(used_categories)}. "
            f"Эффективность: {stats['efficiency_score']}%.")


class CommandSuggester:
    """Completion for typed assistant commands."""

    COMMANDS = [
        "покажи всех пользователей", "покажи все книги", "покажи все резервирования",
        "создать пользователя", "создать книгу", "создать резервирование",
        "найти пользователя", "найти книгу", "статистика пользователей",
        "статистика книг", "статистика резервирований", "построить график",
        "создать отчет", "топ популярных книг", "просроченные резервирования",
        "активные резервирования", "одобрить резервирование", "отменить резервирование",
        "вернуть книгу", "выдать книгу", "назначить роль", "изменить пароль",
        "отправить уведомление", "перейти на страницу", "открыть каталог",
    ]

    @classmethod
    def get_suggestions(cls, text: str, max_suggestions: int = 5) -> List[str]:
        normalized = text.lower().strip()
        if not normalized:
            return []
        starts = [command for command in cls.COMMANDS if command.startswith(normalized)]
        contains = [command for command in cls.COMMANDS
                    if normalized in command and command not in starts]
        words = normalized.split(" ")
        fuzzy = [command for command in cls.COMMANDS
                 if all(word in command for word in words) and command not in starts and command not in contains]
        return (starts + contains + fuzzy)[:max_suggestions]


def cache_stats() -> Dict[str, Any]:
    return {
        "analysis_entries": _analysis_cache.size(),
        "selection_entries": _selection_cache.size(),
        "analysis": _analysis_cache.get_stats(),
        "selection": _selection_cache.get_stats(),
    }


def clear_caches() -> None:
    _analysis_cache.clear()
    _selection_cache.clear()
    logger.info("Tool selection caches cleared")

from libdesk.assistant.tool_catalog import ALL_TOOLS, get_tool, to_openai_schema
from libdesk.assistant.tool_selection import (
    FINAL_RESPONSE_LIMIT, FINAL_RESPONSE_TOOLS, PASSWORD_TOOLS, CommandSuggester, ExecutionContext,
    SelectionConfig, UserLevel, _suggest_categories, analyze_execution_context, analyze_query, cache_stats,
    clear_caches, create_selection_summary, default_categories, detect_entities, detect_intent, filter_tools,
    get_query_complexity, get_tool_usage_stats, select_tools, tool_name_variants,
)


def _names(tools):
    return {tool.name for tool in tools}


def test_password_tools_need_a_password_mention():
    with_password = select_tools("сменить пароль пользователя Ивана", ALL_TOOLS)
    assert with_password.analysis.has_password_mention
    assert "changeUserPassword" in _names(with_password.selected_tools)

    without = select_tools("показать пользователей", ALL_TOOLS)
    assert not _names(without.selected_tools) & set(PASSWORD_TOOLS)


def test_several_entities_drop_crud_but_keep_reservations():
    selection = select_tools("создать резервирование книги для пользователя", ALL_TOOLS)
    assert selection.analysis.has_multiple_entities
    names = _names(selection.selected_tools)
    assert "createReservation" in names
    assert not names & {"createUser", "createBook", "deleteBook", "updateUser"}


def test_novice_does_not_get_role_tools():
    novice = select_tools("назначить роль пользователю", ALL_TOOLS, SelectionConfig(user_level=UserLevel.NOVICE))
    assert "assignRoleToUser" not in _names(novice.selected_tools)

    intermediate = select_tools("назначить роль пользователю", ALL_TOOLS)
    assert "assignRoleToUser" in _names(intermediate.selected_tools)
    assert "roles" in intermediate.used_categories


def test_final_response_keeps_read_only_tools():
    tools = filter_tools(ALL_TOOLS, ["users", "books"], config=SelectionConfig(is_final_response=True))
    assert tools
    assert len(tools) <= FINAL_RESPONSE_LIMIT
    assert _names(tools) <= set(FINAL_RESPONSE_TOOLS)

    from_context = filter_tools(ALL_TOOLS, ["users"], context=ExecutionContext(is_likely_final_response=True))
    assert _names(from_context) <= set(FINAL_RESPONSE_TOOLS)

    # navigation answers are never treated as final
    navigation = filter_tools(ALL_TOOLS, ["navigation"], config=SelectionConfig(is_final_response=True))
    assert "navigateToPage" in _names(navigation)


def test_filter_tools_excludes_categories_and_caps_size():
    tools = filter_tools(ALL_TOOLS, ["books"], config=SelectionConfig(excluded_categories=["system"]))
    assert "stopAgent" not in _names(tools)
    capped = filter_tools(ALL_TOOLS, ["books"], ["getTopPopularBooks"], SelectionConfig(max_tools_per_request=3))
    assert len(capped) == 3
    assert "getTopPopularBooks" in _names(capped)


def test_append_to_existing_keeps_earlier_tools():
    config = SelectionConfig(append_to_existing=True, existing_tools=[get_tool("getUserStatistics")])
    selection = select_tools("найти книгу", ALL_TOOLS, config)
    assert {"getUserStatistics", "searchBooks"} <= _names(selection.selected_tools)


def test_execution_context():
    history = [
        {"content": "найди Дюну"},
        {"content": "⚡ searchBooks", "api_call": {"endpoint": "searchBooks"}},
        {"content": "Нашлась одна книга"},
    ]
    context = analyze_execution_context(history, current_iteration=1)
    assert context.has_executed_tools
    assert context.executed_tool_names == ["searchBooks"]
    assert not context.last_iteration_had_tools
    assert context.is_likely_final_response

    assert not analyze_execution_context(history, current_iteration=0).is_likely_final_response
    assert not analyze_execution_context([]).has_executed_tools


def test_usage_stats():
    stats = get_tool_usage_stats([get_tool("searchBooks")], ALL_TOOLS[:4])
    assert stats["total_tools"] == 4
    assert stats["reduction_percentage"] == 75
    assert stats["categories_used"] == ["books", "reports"]
    assert stats["efficiency_score"] == 85
    assert get_tool_usage_stats([], [])["reduction_percentage"] == 0


def test_selection_summary():
    selection = select_tools("показать пользователей", ALL_TOOLS)
    stats = get_tool_usage_stats(selection.selected_tools, ALL_TOOLS)
    summary = create_selection_summary(selection.analysis, selection.used_categories, stats)
    assert "Пользователи" in summary
    assert f"Отправлено {stats['selected_count']}/{len(ALL_TOOLS)}" in summary
    assert "Инструменты паролей исключены." in summary


def test_command_suggestions():
    assert CommandSuggester.get_suggestions("создать") == [
        "создать пользователя", "создать книгу", "создать резервирование", "создать отчет",
    ]
    assert CommandSuggester.get_suggestions("книгу найти") == ["найти книгу"]
    assert CommandSuggester.get_suggestions("  ") == []
    assert len(CommandSuggester.get_suggestions("а", max_suggestions=3)) == 3


def test_tool_name_variants():
    variants = tool_name_variants("getAllBooks")
    assert variants[:2] == ["getAllBooks", "get all books"]
    assert "получить all books" in variants
    assert "get все books" in variants


def test_intent_and_complexity():
    assert detect_intent("сколько книг в фонде") == "question"
    assert detect_intent("показать статистику") == "report"
    assert detect_intent("перейти в каталог") == "navigation"
    assert detect_intent("удалить книгу") == "action"

    assert get_query_complexity("книги толстого") == "simple"
    assert get_query_complexity("удалить книгу") == "medium"
    assert get_query_complexity("создать книгу и пользователя") == "complex"
    assert get_query_complexity("книги за неделю") == "complex"


def test_entity_detection():
    assert detect_entities("Брони читателя") == ["users", "reservations"]
    assert detect_entities("hello") == []


def test_analysis_is_cached():
    first = analyze_query("Найти книгу")
    assert analyze_query("  найти книгу ") is first
    assert analyze_query("найти книгу", UserLevel.EXPERT) is not first
    assert "searchBooks" in first.detected_tools
    assert first.detected_categories[0] == "books"
    assert cache_stats()["analysis_entries"] == 2

    clear_caches()
    assert cache_stats()["analysis_entries"] == 0


def test_selection_is_cached():
    first = select_tools("найти книгу", ALL_TOOLS)
    assert select_tools("найти книгу", ALL_TOOLS) is first


def test_openai_schema():
    schema = to_openai_schema(get_tool("searchBooks"))
    assert schema["type"] == "function"
    assert schema["function"]["name"] == "searchBooks"
    assert schema["function"]["parameters"]["type"] == "object"


def test_simple_navigation_sends_only_navigation():
    selection = select_tools("перейти в каталог", ALL_TOOLS)
    assert selection.analysis.intent_type == "navigation"
    assert selection.analysis.complexity == "simple"
    assert "books" in selection.analysis.detected_categories
    assert _names(selection.selected_tools) == {"navigateToPage", "systemContext", "stopAgent",
                                                "cancelCurrentAction"}
    assert selection.used_categories == ["navigation", "system"]


def test_tool_count_follows_query_complexity():
    assert len(select_tools("перейти в каталог", ALL_TOOLS).selected_tools) == 4

    two_categories = select_tools("книги толстого", ALL_TOOLS)
    assert two_categories.analysis.complexity == "simple"
    assert len(two_categories.selected_tools) == 6

    medium = select_tools("удалить книгу", ALL_TOOLS)
    assert medium.analysis.complexity == "medium"
    assert len(medium.selected_tools) == 10
    assert {"deleteBook", "searchBooks"} <= _names(medium.selected_tools)

    several = select_tools("книги пользователя", ALL_TOOLS)
    assert several.analysis.complexity == "medium"
    assert several.analysis.has_multiple_entities
    assert len(several.selected_tools) == 8

    complex_query = select_tools("книги за неделю", ALL_TOOLS)
    assert complex_query.analysis.complexity == "complex"
    assert len(complex_query.selected_tools) == 15


def test_final_response_sends_at_most_six_tools():
    selection = select_tools("книги за неделю", ALL_TOOLS, SelectionConfig(is_final_response=True))
    assert len(selection.selected_tools) == 6
    assert _names(selection.selected_tools) <= set(FINAL_RESPONSE_TOOLS)

    assert len(select_tools("книги за неделю", ALL_TOOLS).selected_tools) == 15


def test_reservations_bring_users_and_books_along():
    analysis = analyze_query("бронирование")
    assert analysis.detected_categories == ["reservations"]
    assert analysis.suggested_categories == ["users", "books"]

    selection = select_tools("бронирование", ALL_TOOLS)
    names = _names(selection.selected_tools)
    assert {"searchReservations", "searchUsers", "searchBooks"} <= names
    assert {"users", "books", "reservations"} <= set(selection.used_categories)


def test_suggested_categories():
    assert _suggest_categories(["users"], "роль читателя", "action", UserLevel.INTERMEDIATE) == ["roles"]
    assert _suggest_categories(["users"], "роль читателя", "action", UserLevel.NOVICE) == []
    assert _suggest_categories(["books"], "показать книги", "report", UserLevel.INTERMEDIATE) == ["reports"]
    assert _suggest_categories([], "привет", "action", UserLevel.NOVICE) == ["users", "books", "reservations"]


def test_search_tools_join_their_categories():
    selection = select_tools("книги пользователя", ALL_TOOLS)
    assert selection.analysis.detected_tools == []
    assert {"searchUsers", "searchBooks"} <= _names(selection.selected_tools)


def test_unmatched_long_query_gets_the_basic_bundle():
    query = "расскажи что-нибудь интересное"
    assert analyze_query(query).detected_categories == []
    assert default_categories(query, UserLevel.INTERMEDIATE) == ["users", "books", "reservations", "reports"]
    assert default_categories(query, UserLevel.NOVICE) == ["users", "books", "reservations"]

    selection = select_tools(query, ALL_TOOLS)
    assert len(selection.selected_tools) == 6
    assert "getAllUsers" in _names(selection.selected_tools)
    assert "users" in selection.used_categories


def test_small_talk_gets_only_system_tools():
    assert default_categories("привет", UserLevel.INTERMEDIATE) == []
    selection = select_tools("привет", ALL_TOOLS)
    assert _names(selection.selected_tools) == {"systemContext", "stopAgent", "cancelCurrentAction"}
    assert selection.used_categories == ["system"]

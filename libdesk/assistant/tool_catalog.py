"""
Catalog of the operations the admin assistant may call.

Every tool maps onto one REST route of this service. Client side tools
(page navigation, stopping the agent) have no route.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class Tool:
    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    api_method: Optional[str] = None
    api_endpoint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
            "api_method": self.api_method,
            "api_endpoint": self.api_endpoint,
        }


STRING = {"type": "string"}
INTEGER = {"type": "integer"}
NUMBER = {"type": "number"}
BOOLEAN = {"type": "boolean"}
STRING_LIST = {"type": "array", "items": {"type": "string"}}

USER_ID = {"user_id": {"type": "string", "description": "User id"}}
BOOK_ID = {"book_id": {"type": "string", "description": "Book id"}}
INSTANCE_ID = {"instance_id": {"type": "string", "description": "Book instance id"}}
RESERVATION_ID = {"reservation_id": {"type": "string", "description": "Reservation id"}}
ROLE_ID = {"role_id": {"type": "integer", "description": "Role id"}}
QUERY = {"q": {"type": "string", "description": "Search text"}}
PAGING = {"limit": INTEGER, "offset": INTEGER}

BOOK_FIELDS = {
    "title": STRING, "authors": STRING, "isbn": STRING, "genre": STRING,
    "categorization": STRING, "udk": STRING, "bbk": STRING, "description": STRING,
    "publication_year": INTEGER, "publisher": STRING, "page_count": INTEGER,
    "language": STRING, "available_copies": INTEGER,
}
USER_FIELDS = {
    "full_name": STRING, "email": STRING, "phone": STRING,
    "max_books_allowed": INTEGER, "loan_period_days": INTEGER,
}
INSTANCE_FIELDS = {
    "instance_code": STRING, "status": STRING, "condition": STRING, "purchase_price": NUMBER,
    "date_acquired": STRING, "notes": STRING, "location": STRING, "shelf_id": INTEGER, "position": INTEGER,
}


def _params(properties: Optional[Dict[str, Any]] = None, required: tuple = ()) -> Dict[str, Any]:
    schema: Dict[str, Any] = {"type": "object", "properties": dict(properties or {})}
    if required:
        schema["required"] = list(required)
    return schema


def _tool(name: str, description: str, method: Optional[str] = None, endpoint: Optional[str] = None,
          properties: Optional[Dict[str, Any]] = None, required: tuple = ()) -> Tool:
    return Tool(name, description, _params(properties, required), method, endpoint)


ALL_TOOLS: List[Tool] = [
    # Users
    _tool("getAllUsers", "List users, paged.", "GET", "/api/users", {**QUERY, **PAGING}),
    _tool("getUserById", "Get one user by id.", "GET", "/api/users/{user_id}", USER_ID, ("user_id",)),
    _tool("searchUsers", "Search users by name, e-mail or phone.", "GET", "/api/users/search", QUERY, ("q",)),
    _tool("createUser", "Register a user. Role defaults to reader.", "POST", "/api/users",
          {**USER_FIELDS, "password": STRING, "roles": STRING_LIST}, ("full_name", "email", "password")),
    _tool("updateUser", "Change user fields.", "PUT", "/api/users/{user_id}",
          {**USER_ID, **USER_FIELDS, "is_active": BOOLEAN}, ("user_id",)),
    _tool("deleteUser", "Delete a user who holds no issued books.", "DELETE", "/api/users/{user_id}",
          USER_ID, ("user_id",)),
    _tool("changeUserPassword", "Change a password after checking the old one.", "PUT",
          "/api/users/{user_id}/password", {**USER_ID, "old_password": STRING, "new_password": STRING},
          ("user_id", "old_password", "new_password")),
    _tool("resetUserPassword", "Reset a password to a temporary one.", "POST",
          "/api/users/{user_id}/reset-password", USER_ID, ("user_id",)),
    _tool("getUserReservations", "All reservations of a user.", "GET", "/api/users/{user_id}/reservations",
          USER_ID, ("user_id",)),
    _tool("getUserActiveReservations", "Active reservations of a user.", "GET",
          "/api/users/{user_id}/reservations/active", USER_ID, ("user_id",)),
    _tool("getUserOverdueReservations", "Overdue reservations of a user.", "GET",
          "/api/users/{user_id}/reservations/overdue", USER_ID, ("user_id",)),
    _tool("getUserRecommendations", "Book recommendations for a user.", "GET",
          "/api/users/{user_id}/recommendations", {**USER_ID, "limit": INTEGER}, ("user_id",)),
    _tool("getUsersWithBooks", "Users currently holding books.", "GET", "/api/users/with-books"),
    _tool("getUsersWithFines", "Users with unpaid fines.", "GET", "/api/users/with-fines"),
    _tool("getUserStatistics", "Reader counts, activity and fines.", "GET", "/api/users/statistics"),

    # Books
    _tool("getAllBooks", "List books, paged and sorted.", "GET", "/api/books",
          {**QUERY, "genre": STRING, "sort_by": STRING, "order": STRING, **PAGING}),
    _tool("getBookById", "Get one book by id.", "GET", "/api/books/{book_id}", BOOK_ID, ("book_id",)),
    _tool("searchBooks", "Search books by title, author, ISBN, genre or publisher.", "GET",
          "/api/books/search", QUERY, ("q",)),
    _tool("createBook", "Add a book to the catalog.", "POST", "/api/books", BOOK_FIELDS, ("title", "authors")),
    _tool("updateBook", "Change book fields.", "PUT", "/api/books/{book_id}", {**BOOK_ID, **BOOK_FIELDS},
          ("book_id",)),
    _tool("deleteBook", "Delete a book with its instances.", "DELETE", "/api/books/{book_id}", BOOK_ID,
          ("book_id",)),
    _tool("updateBookGenre", "Set the genre of a book.", "PUT", "/api/books/{book_id}/genre",
          {**BOOK_ID, "genre": STRING}, ("book_id", "genre")),
    _tool("updateBookCategorization", "Set the categorization of a book.", "PUT",
          "/api/books/{book_id}/categorization", {**BOOK_ID, "categorization": STRING},
          ("book_id", "categorization")),
    _tool("addBookToFavorites", "Add a book to a user's favorites.", "POST",
          "/api/users/{user_id}/favorites/{book_id}", {**USER_ID, **BOOK_ID}, ("user_id", "book_id")),
    _tool("removeBookFromFavorites", "Remove a book from a user's favorites.", "DELETE",
          "/api/users/{user_id}/favorites/{book_id}", {**USER_ID, **BOOK_ID}, ("user_id", "book_id")),
    _tool("getBookAvailability", "Copies per status and the next expected return.", "GET",
          "/api/books/{book_id}/availability", BOOK_ID, ("book_id",)),
    _tool("getBestAvailableBookInstance", "The best available copy of a book.", "GET",
          "/api/books/{book_id}/best-instance", BOOK_ID, ("book_id",)),
    _tool("getAllBookInstances", "List book instances, optionally by status.", "GET", "/api/instances",
          {"status": STRING}),
    _tool("getBookInstanceById", "Get one book instance.", "GET", "/api/instances/{instance_id}",
          INSTANCE_ID, ("instance_id",)),
    _tool("getBookInstancesByBookId", "Instances of one book.", "GET", "/api/books/{book_id}/instances",
          BOOK_ID, ("book_id",)),
    _tool("createBookInstance", "Add a physical copy of a book.", "POST", "/api/books/{book_id}/instances",
          {**BOOK_ID, **INSTANCE_FIELDS}, ("book_id",)),
    _tool("updateBookInstance", "Change instance fields.", "PUT", "/api/instances/{instance_id}",
          {**INSTANCE_ID, **INSTANCE_FIELDS}, ("instance_id",)),
    _tool("deleteBookInstance", "Delete an instance not held by a reservation.", "DELETE",
          "/api/instances/{instance_id}", INSTANCE_ID, ("instance_id",)),
    _tool("updateBookInstanceStatus", "Set the status of an instance.", "PUT",
          "/api/instances/{instance_id}/status", {**INSTANCE_ID, "status": STRING}, ("instance_id", "status")),
    _tool("getBookInstanceStats", "Instance counts by status and condition.", "GET", "/api/instances/stats"),
    _tool("createMultipleBookInstances", "Create several copies with generated codes.", "POST",
          "/api/books/{book_id}/instances/multiple", {**BOOK_ID, "count": INTEGER, "condition": STRING,
                                                      "location": STRING}, ("book_id", "count")),
    _tool("autoCreateBookInstances", "Top instances up to the book's copy count.", "POST",
          "/api/books/{book_id}/instances/auto-create", BOOK_ID, ("book_id",)),
    _tool("getBookInstanceReservation", "The active reservation holding an instance.", "GET",
          "/api/instances/{instance_id}/reservation", INSTANCE_ID, ("instance_id",)),
    _tool("getInstanceStatusSummary", "Instance status counts for one book.", "GET",
          "/api/books/{book_id}/instances/summary", BOOK_ID, ("book_id",)),
    _tool("bulkCreateBookInstances", "Create many instances at once.", "POST", "/api/instances/bulk",
          {"items": {"type": "array", "items": {"type": "object"}}}, ("items",)),
    _tool("bulkUpdateBookInstanceStatuses", "Set one status on many instances.", "PUT",
          "/api/instances/bulk-status", {"instance_ids": STRING_LIST, "status": STRING},
          ("instance_ids", "status")),
    _tool("getBookStatistics", "Catalog totals, genres and instance states.", "GET", "/api/books/statistics"),
    _tool("getTopPopularBooks", "Most reserved books.", "GET", "/api/books/top-popular", {"limit": INTEGER}),

    # Reservations
    _tool("getAllReservations", "List reservations with filters.", "GET", "/api/reservations",
          {"status": STRING, "user_id": STRING, "book_id": STRING, **QUERY, **PAGING}),
    _tool("getReservationById", "Get one reservation.", "GET", "/api/reservations/{reservation_id}",
          RESERVATION_ID, ("reservation_id",)),
    _tool("searchReservations", "Search reservations by reader, book or notes.", "GET",
          "/api/reservations/search", QUERY, ("q",)),
    _tool("createReservation", "Reserve a book for a user.", "POST", "/api/reservations",
          {**USER_ID, **BOOK_ID, "reservation_date": STRING, "expiration_date": STRING, "notes": STRING},
          ("user_id", "book_id")),
    _tool("updateReservation", "Change reservation notes, dates or status.", "PUT",
          "/api/reservations/{reservation_id}",
          {**RESERVATION_ID, "status": STRING, "notes": STRING, "expiration_date": STRING},
          ("reservation_id",)),
    _tool("deleteReservation", "Delete a reservation and release its copy.", "DELETE",
          "/api/reservations/{reservation_id}", RESERVATION_ID, ("reservation_id",)),
    _tool("getReservationDates", "Reservation periods of all books.", "GET", "/api/reservations/dates"),
    _tool("getReservationDatesByBookId", "Reservation periods of one book.", "GET",
          "/api/books/{book_id}/reservation-dates", BOOK_ID, ("book_id",)),
    _tool("getReservationsByUserId", "Reservations filtered by user.", "GET", "/api/reservations",
          USER_ID, ("user_id",)),
    _tool("bulkUpdateReservations", "Set one status on many reservations.", "PUT", "/api/reservations/bulk",
          {"reservation_ids": STRING_LIST, "status": STRING}, ("reservation_ids", "status")),
    _tool("getOverdueReservations", "Issued reservations past their due date.", "GET",
          "/api/reservations/overdue"),
    _tool("getReservationStatistics", "Reservation counts by status and month.", "GET",
          "/api/reservations/statistics"),

    # Roles
    _tool("getAllRoles", "List roles with user counts.", "GET", "/api/roles"),
    _tool("assignRoleToUser", "Give a role to a user.", "POST", "/api/users/{user_id}/roles/{role_id}",
          {**USER_ID, **ROLE_ID}, ("user_id", "role_id")),
    _tool("assignRoleToMultipleUsers", "Give a role to many users.", "POST", "/api/roles/{role_id}/assign-many",
          {**ROLE_ID, "user_ids": STRING_LIST}, ("role_id", "user_ids")),
    _tool("updateUserRole", "Replace all roles of a user with one role.", "PUT", "/api/users/{user_id}/role",
          {**USER_ID, **ROLE_ID}, ("user_id", "role_id")),
    _tool("removeRoleFromUser", "Take a role away from a user.", "DELETE", "/api/users/{user_id}/roles/{role_id}",
          {**USER_ID, **ROLE_ID}, ("user_id", "role_id")),
    _tool("removeRoleFromMultipleUsers", "Take a role away from many users.", "POST",
          "/api/roles/{role_id}/remove-many", {**ROLE_ID, "user_ids": STRING_LIST}, ("role_id", "user_ids")),

    # Notifications
    _tool("sendCustomPushNotification", "Send an in-app notification to a user.", "POST", "/api/notifications",
          {**USER_ID, "title": STRING, "message": STRING, "type": STRING, "priority": STRING},
          ("user_id", "title", "message")),
    _tool("sendCustomSingleEmail", "Send a plain e-mail to a user.", "POST", "/api/notifications/email",
          {**USER_ID, "subject": STRING, "body": STRING}, ("user_id", "subject", "body")),
    _tool("sendCustomEmailWithTemplate", "Send a templated e-mail to a user.", "POST",
          "/api/notifications/email-template",
          {**USER_ID, "template": STRING, "context": {"type": "object"}}, ("user_id", "template")),

    # Dialog history
    _tool("getAllDialogHistory", "Recent assistant messages.", "GET", "/api/dialog-history", {"limit": INTEGER}),
    _tool("getDialogHistoryByConversationId", "Messages of one conversation.", "GET",
          "/api/dialog-history/{conversation_id}", {"conversation_id": STRING}, ("conversation_id",)),
    _tool("searchDialogHistory", "Search assistant messages.", "GET", "/api/dialog-history/search", QUERY, ("q",)),

    # Client side
    _tool("navigateToPage", "Open a page of the admin console.", properties={"path": STRING},
          required=("path",)),
    _tool("systemContext", "Current date, user and page for the assistant."),
    _tool("stopAgent", "Stop the assistant."),
    _tool("cancelCurrentAction", "Cancel the running action."),
]

_TOOLS_BY_NAME = {tool.name: tool for tool in ALL_TOOLS}


def get_tool(name: str) -> Optional[Tool]:
    return _TOOLS_BY_NAME.get(name)


def to_openai_schema(tool: Tool) -> Dict[str, Any]:
    """Function-calling entry for the chat completions API."""
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters,
        },
    }

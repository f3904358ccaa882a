import unittest

from sqlalchemy.exc import OperationalError

from dbclone.errors import DatabaseConnectionError, ErrorCategory, QueryError
from dbclone.services.error_classifier import error_classifier, extract_error_details


class PgError(Exception):
    def __init__(self, message, pgcode):
        super().__init__(message)
        self.pgcode = pgcode


class TestErrorClassifier(unittest.TestCase):
    def test_foreign_key_violation_from_message(self):
        error = Exception("Cannot add or update a child row: a foreign key constraint fails")
        self.assertEqual(error_classifier.classify(error), ErrorCategory.FOREIGN_KEY_VIOLATION)

    def test_permission_denied_from_sqlstate(self):
        self.assertEqual(
            error_classifier.classify(PgError("nope", "42501")), ErrorCategory.PERMISSION_DENIED
        )

    def test_table_not_found(self):
        self.assertEqual(
            error_classifier.classify(Exception("no such table: users")), ErrorCategory.TABLE_NOT_FOUND
        )
        self.assertEqual(error_classifier.classify(PgError("x", "42P01")), ErrorCategory.TABLE_NOT_FOUND)

    def test_transient_errors_are_retryable(self):
        for message in ("Deadlock found when trying to get lock", "Lost connection to MySQL server", "database is locked"):
            with self.subTest(message=message):
                self.assertEqual(error_classifier.classify(Exception(message)), ErrorCategory.TRANSIENT)
                self.assertTrue(error_classifier.is_retryable(Exception(message)))

    def test_connection_class_sqlstate_is_transient(self):
        self.assertEqual(error_classifier.classify(PgError("server closed", "08006")), ErrorCategory.TRANSIENT)

    def test_pymysql_errno_in_wrapped_error(self):
        wrapped = OperationalError("INSERT ...", {}, Exception(1213, "Deadlock"))
        message, code = extract_error_details(wrapped)
        self.assertEqual(code, "1213")
        self.assertTrue(error_classifier.is_retryable(wrapped))

    def test_connection_errors_are_retryable(self):
        self.assertTrue(error_classifier.is_retryable(DatabaseConnectionError("refused")))

    def test_unknown_is_not_retryable(self):
        error = Exception("syntax error near SELEC")
        self.assertEqual(error_classifier.classify(error), ErrorCategory.UNKNOWN)
        self.assertFalse(error_classifier.is_retryable(error))

    def test_classified_query_error_keeps_its_category(self):
        error = QueryError("whatever", category=ErrorCategory.PERMISSION_DENIED)
        self.assertEqual(error_classifier.classify(error), ErrorCategory.PERMISSION_DENIED)
        self.assertFalse(error_classifier.is_retryable(error))


if __name__ == '__main__':
    unittest.main()

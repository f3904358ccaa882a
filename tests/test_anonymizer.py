import hashlib
import hmac
import unittest

from dbclone.errors import ConfigurationError
from dbclone.models.config import (
    ColumnMutation, ColumnMutationOptions, ColumnMutationStrategy, TableAnonymizationOptions,
)
from dbclone.services.anonymizer import Anonymizer


def mutation(column, strategy, **options):
    return ColumnMutation(column_name=column, strategy=strategy, options=ColumnMutationOptions(**options))


class TestAnonymizer(unittest.TestCase):
    def setUp(self):
        self.anonymizer = Anonymizer(generators={"company_code": lambda: "ACME"})

    def test_mask_keeps_visible_prefix(self):
        value = self.anonymizer.mutate_value("secret", mutation("c", ColumnMutationStrategy.MASK, visible_chars=2))
        self.assertEqual(value, "se****")

    def test_mask_short_and_null_values(self):
        rule = mutation("c", ColumnMutationStrategy.MASK, visible_chars=4, mask_char="#")
        self.assertEqual(self.anonymizer.mutate_value("abc", rule), "###")
        self.assertEqual(self.anonymizer.mutate_value(None, rule), "")

    def test_mask_preserves_email_domain(self):
        rule = mutation("email", ColumnMutationStrategy.MASK, visible_chars=1, preserve_format=True)
        self.assertEqual(self.anonymizer.mutate_value("alice@example.com", rule), "a****@example.com")

    def test_static_null_keep(self):
        self.assertEqual(self.anonymizer.mutate_value("x", mutation("c", ColumnMutationStrategy.STATIC, value=0)), 0)
        self.assertIsNone(self.anonymizer.mutate_value("x", mutation("c", ColumnMutationStrategy.NULL)))
        self.assertEqual(self.anonymizer.mutate_value("x", mutation("c", ColumnMutationStrategy.KEEP)), "x")

    def test_hash_is_salted_hmac(self):
        rule = mutation("c", ColumnMutationStrategy.HASH, salt="pepper", algorithm="sha256")
        expected = hmac.new(b"pepper", b"42", hashlib.sha256).hexdigest()
        self.assertEqual(self.anonymizer.mutate_value(42, rule), expected)

    def test_hash_with_unknown_algorithm(self):
        rule = mutation("c", ColumnMutationStrategy.HASH, algorithm="no-such-digest")
        with self.assertRaises(ConfigurationError):
            self.anonymizer.mutate_value("x", rule)

    def test_fake_uses_registered_generator_before_faker(self):
        rule = mutation("c", ColumnMutationStrategy.FAKE, fake_method="company_code")
        self.assertEqual(self.anonymizer.mutate_value("x", rule), "ACME")

    def test_fake_uses_faker_provider(self):
        rule = mutation("c", ColumnMutationStrategy.FAKE, fake_method="email")
        self.assertIn("@", self.anonymizer.mutate_value("x", rule))

    def test_fake_with_unknown_method(self):
        rule = mutation("c", ColumnMutationStrategy.FAKE, fake_method="definitely_not_a_provider")
        with self.assertRaises(ConfigurationError):
            self.anonymizer.mutate_value("x", rule)

    def test_anonymize_row_leaves_other_columns_alone(self):
        options = TableAnonymizationOptions(column_mutations=[
            mutation("email", ColumnMutationStrategy.NULL),
            mutation("missing", ColumnMutationStrategy.STATIC, value="x"),
        ])
        row = {"id": 1, "email": "a@b.c"}
        self.assertEqual(self.anonymizer.anonymize_row(row, options), {"id": 1, "email": None})
        self.assertEqual(row["email"], "a@b.c")
        self.assertIs(self.anonymizer.anonymize_row(row, None), row)


if __name__ == '__main__':
    unittest.main()

import sys
import unittest
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from endpoint_sql.errors import ConfigurationError  # noqa: E402
from endpoint_sql.identifiers import (  # noqa: E402
    MAX_IDENTIFIER_LENGTH,
    bare_name,
    identifier_text,
    is_simple_name,
    is_valid_identifier,
    render_identifier,
    validate_identifier,
)


class TestIdentifierValidation(unittest.TestCase):
    def test_accepts_plain_qualified_and_bracketed_names(self):
        for name in ("Users", "dbo.Users", "[User Orders]", "sales.[Order Lines]", "_tmp1"):
            with self.subTest(name=name):
                self.assertTrue(is_valid_identifier(name))

    def test_rejects_injection_length_and_quotes(self):
        bad = [
            "Users; DROP TABLE Users--",
            "a" * (MAX_IDENTIFIER_LENGTH + 1),
            "O'Brien",
            'Users"',
            "Users`",
            "Users/*x*/",
            "1Users",
            "",
            "Users..Orders",
            "[Users",
            None,
            42,
        ]
        for name in bad:
            with self.subTest(name=name):
                self.assertFalse(is_valid_identifier(name))

    def test_length_boundary(self):
        self.assertTrue(is_valid_identifier("a" * MAX_IDENTIFIER_LENGTH))

    def test_validate_identifier_raises_configuration_error(self):
        self.assertEqual(validate_identifier("Users"), "Users")
        with self.assertRaisesRegex(ConfigurationError, "table name"):
            validate_identifier("Users;", "table name")


class TestIdentifierRendering(unittest.TestCase):
    def test_plain_names_render_verbatim(self):
        self.assertEqual(render_identifier("dbo.Users").as_string(None), "dbo.Users")
        self.assertEqual(identifier_text("dbo.Users"), "dbo.Users")

    def test_identifier_text_quotes_bracketed_parts(self):
        self.assertEqual(identifier_text("sales.[Order Lines]"), 'sales."Order Lines"')

    def test_render_rejects_invalid(self):
        with self.assertRaises(ConfigurationError):
            render_identifier("x; DELETE FROM y")

    def test_bare_name_and_simple_name(self):
        self.assertEqual(bare_name("dbo.Users"), "Users")
        self.assertEqual(bare_name("sales.[Order Lines]"), "Order Lines")
        self.assertTrue(is_simple_name("Title"))
        self.assertFalse(is_simple_name("dbo.Title"))
        self.assertFalse(is_simple_name("[Title]"))


if __name__ == "__main__":
    unittest.main()

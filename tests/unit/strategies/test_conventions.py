from codemend.strategies.conventions import analyze


def test_indent_unit_from_module():
    assert analyze("def f():\n  if x:\n    return 1\n").indent_unit == "  "
    assert analyze("def f():\n\treturn 1\n").indent_unit == "\t"
    assert analyze("x = 1\n").indent_unit == "    "


def test_mixed_indentation():
    conventions = analyze("def f():\n    return 1\n\n\ndef g():\n\treturn 2\n")
    assert conventions.mixed_indentation


def test_quote_style_follows_majority():
    conventions = analyze("a = 'x'\nb = 'y'\nc = \"z\"\n")
    assert conventions.quote == "'"
    assert conventions.string("it's") == "'it\\'s'"


def test_docstrings_do_not_count_as_quotes():
    assert analyze('"""Module."""\nx = \'a\'\n').quote == "'"


def test_variable_names_follow_style_and_avoid_collisions():
    snake = analyze("value = 1\nvalue_1 = 2\nsome_name = 3\n")
    assert snake.variable_name("value") == "value_2"
    assert snake.variable_name("value") == "value_3"

    camel = analyze("fooBar = 1\nbazQux = 2\n")
    assert camel.naming == "camelCase"
    assert camel.variable_name("match", "value") == "matchValue"


def test_imports_are_collected():
    conventions = analyze("import os.path\nfrom typing import List as L\n")
    assert conventions.imported == {"os", "L"}

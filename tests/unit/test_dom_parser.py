"""Unit tests for markup flattening and comparison-table detection."""

from bs4 import BeautifulSoup

from shoespecs.services.dom_parser import detect_multi_table, parse_document

COMPARISON_HTML = """
<html>
  <head><style>p { color: red; }</style></head>
  <body>
    <script>var tracking = 1;</script>
    <p>Two daily trainers compared.</p>
    <table>
      <tr><th>Spec</th><th>Shoe A</th><th>Shoe B</th></tr>
      <tr><td>Weight</td><td>255 g</td><td>9.5 oz</td></tr>
      <tr><td>Drop</td><td>8 mm</td><td>10 mm</td></tr>
      <tr><td>Price</td><td>$140</td><td>$160</td></tr>
    </table>
  </body>
</html>
"""


def test_comparison_table_becomes_multi_table() -> None:
    """A Spec/Shoe A/Shoe B table yields one model per column."""
    result = parse_document(COMPARISON_HTML)

    assert result.tables_total == 1
    assert result.candidates_found == 1
    multi = result.multi_table
    assert multi is not None
    assert [m.model_name for m in multi.models] == ["Shoe A", "Shoe B"]

    shoe_a, shoe_b = multi.models
    assert shoe_a.weight_g == 255
    assert shoe_a.drop_mm == 8
    assert shoe_a.price_usd == 140
    assert shoe_a.raw == {"weight": "255 g", "drop_mm": "8 mm", "price_usd": "$140"}
    assert shoe_b.weight_oz == 9.5
    assert shoe_b.weight_g == 269
    assert shoe_b.price_usd == 160

    assert multi.table_match_confidence == 9 / 20
    assert multi.source_labels_found == ["WEIGHT", "STACK", "DROP", "PRICE", "MULTI_TABLE"]


def test_body_text_excludes_scripts_and_styles() -> None:
    """Only visible body text is kept, whitespace collapsed."""
    result = parse_document(COMPARISON_HTML)

    assert "Two daily trainers compared." in result.body_text
    assert "tracking" not in result.body_text
    assert "color" not in result.body_text
    assert "  " not in result.body_text
    assert result.text_length == len(result.body_text)


def test_stack_row_fills_heel_forefoot_and_derived_drop() -> None:
    """A stack pair row fills heel and forefoot, and drop is derived."""
    html = """
    <table>
      <tr><td>Spec</td><td>Fast 1</td><td>Fast 2</td></tr>
      <tr><td>Stack Height</td><td>36 / 30 mm</td><td>40 / 32 mm</td></tr>
      <tr><td>Weight</td><td>230g</td><td>260g</td></tr>
    </table>
    """

    result = parse_document(html)

    fast_1, fast_2 = result.multi_table.models
    assert (fast_1.heel_mm, fast_1.forefoot_mm, fast_1.drop_mm) == (36, 30, 6)
    assert (fast_2.heel_mm, fast_2.forefoot_mm, fast_2.drop_mm) == (40, 32, 8)


def test_single_model_table_is_not_a_candidate() -> None:
    """Tables with fewer than two model columns are ignored."""
    html = """
    <table>
      <tr><th>Spec</th><th>Only Shoe</th></tr>
      <tr><td>Weight</td><td>250 g</td></tr>
      <tr><td>Drop</td><td>6 mm</td></tr>
    </table>
    """

    result = parse_document(html)

    assert result.multi_table is None
    assert result.tables_total == 1
    assert result.candidates_found == 0


def test_debug_diagnostics_describe_every_table() -> None:
    """Debug mode reports one diagnostic per table."""
    soup = BeautifulSoup(COMPARISON_HTML + "<table><tr><td>x</td></tr></table>", "html.parser")

    multi, tables_total, candidates, diagnostics = detect_multi_table(soup, debug=True)

    assert multi is not None
    assert tables_total == 2
    assert candidates == 1
    assert diagnostics[0]["is_candidate"] is True
    assert diagnostics[0]["header_cells_count"] == 3
    assert diagnostics[0]["spec_keyword_hits_count"] == 3
    assert diagnostics[1]["is_candidate"] is False
    assert diagnostics[1]["header_cells_count"] is None


def test_document_without_body_uses_whole_text() -> None:
    """Fragments without a body tag are still flattened."""
    result = parse_document("<div>Light <b>and</b> fast</div>")

    assert result.body_text == "Light and fast"
    assert result.multi_table is None

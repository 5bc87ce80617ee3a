"""
Tests for heading-bounded sections and type classification.
"""

from oppscraper.sections import (
    SECTION_MAX_CHARS,
    classify_heading,
    classify_type,
    clean_section_content,
    extract_processed_opportunity,
    find_sections,
)


SECTIONED_HTML = """
<article>
<h2>Opportunity Type</h2><p>Fully funded fellowship</p>
<h2>Location</h2><p>Berlin, Germany</p>
<h2>Eligibility Criteria</h2><p>Early career researchers.</p><script>alert(1)</script>
<h2>Requirements</h2><p>This second eligibility heading is ignored.</p>
<h2>How to Apply</h2><p>Apply online. Also check our other posts and more links</p>
<strong>Deadline</strong><p>30 September 2025</p>
</article>
"""


class TestCleanSectionContent:
    """Tests for section body cleaning."""

    def test_strips_markup_and_scripts(self):
        """Test that tags, scripts and comments are removed."""
        html = "<p>Hello <b>world</b></p><script>var x;</script><!-- hidden -->"

        assert clean_section_content(html) == "Hello world"

    def test_cuts_boilerplate(self):
        """Test that share/related tails are dropped."""
        assert clean_section_content("<p>Apply now. Share this post on Twitter</p>") == "Apply now."

    def test_caps_length(self):
        """Test that section bodies are capped."""
        assert len(clean_section_content("<p>" + "a" * 2000 + "</p>")) == SECTION_MAX_CHARS


class TestFindSections:
    """Tests for find_sections."""

    def test_sections_by_heading(self):
        """Test that bodies between headings are classified."""
        sections = find_sections(SECTIONED_HTML)

        assert sections["type"] == "Fully funded fellowship"
        assert sections["location"] == "Berlin, Germany"
        assert sections["eligibility"] == "Early career researchers."
        assert sections["how_to_apply"] == "Apply online."
        assert sections["deadline"] == "30 September 2025"

    def test_first_heading_owns_category(self):
        """Test that a repeated category keeps the first section."""
        sections = find_sections(SECTIONED_HTML)

        assert "ignored" not in sections["eligibility"]

    def test_headings_with_nested_markup(self):
        """Test that headings wrapping spans or links still bound sections."""
        html = (
            "<h2><span>Eligibility</span></h2><p>Open to students aged 18-30.</p>"
            "<h2><a href='#apply'>How to Apply</a></h2><p>Submit the <em>online</em> form.</p>"
        )

        sections = find_sections(html)

        assert sections["eligibility"] == "Open to students aged 18-30."
        assert sections["how_to_apply"] == "Submit the online form."

    def test_bold_inside_heading_is_one_heading(self):
        """Test that a strong tag inside a heading does not split it."""
        html = "<h3><strong>Deadline</strong> and dates</h3><div><p>Closes 1 May 2025</p></div>"

        assert find_sections(html) == {"deadline": "Closes 1 May 2025"}

    def test_unclassified_heading(self):
        """Test that headings matching nothing are not sections."""
        assert classify_heading("Gallery") is None
        assert find_sections("<h2>Gallery</h2><p>Pictures</p>") == {}


class TestClassifyType:
    """Tests for keyword type classification."""

    def test_first_label_wins(self):
        """Test that labels are checked in order."""
        assert classify_type("A scholarship for research students") == "Scholarship"
        assert classify_type("Research fellow position at a lab") == "Job"

    def test_no_match(self):
        """Test that unknown text yields None."""
        assert classify_type("Photo gallery") is None


class TestExtractProcessedOpportunity:
    """Tests for extract_processed_opportunity."""

    def test_prefers_sections(self):
        """Test that section bodies win over text fallbacks."""
        opportunity = extract_processed_opportunity(
            "Berlin Fellowship", "https://example.org/fellowship", SECTIONED_HTML, "irrelevant text")

        assert opportunity.type == "Fully funded fellowship"
        assert opportunity.location == "Berlin, Germany"
        assert opportunity.original_url == "https://example.org/fellowship"

    def test_text_fallbacks(self):
        """Test that text patterns fill fields without sections."""
        text = ("Summer internship offered by Northwind Trading Company. "
                "Based in Lisbon, Portugal. Stipend: USD 1,200 per month. Deadline 15 March 2025.")

        opportunity = extract_processed_opportunity("", "https://example.org/i", "<p>x</p>", text)

        assert opportunity.title == "Untitled Opportunity"
        assert opportunity.type == "Internship"
        assert opportunity.organization == "Northwind Trading Company"
        assert opportunity.location == "Lisbon"
        assert opportunity.salary_stipend == "USD 1,200"
        assert opportunity.deadline == "15 March 2025"

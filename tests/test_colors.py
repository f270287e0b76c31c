"""Tests for tag colors."""

from winlog.colors import DEFAULT_COLOR, TAG_COLORS, color_for, tag_hash


class TestColorFor:
    def test_same_tag_same_color(self):
        assert color_for("#work") == color_for("#work")
        assert color_for("#work") == color_for("".join(["#", "work"]))

    def test_known_value(self):
        """'#a' hashes to 35 * 31 + 97 = 1182, and 1182 % 7 == 6."""
        assert tag_hash("#a") == 1182
        assert color_for("#a") == TAG_COLORS[6]

    def test_outputs_are_palette_members(self):
        tags = ["#work", "#home", "#gym", "#x", "#y", "#reading", "#a" * 200, "#ünïcödé", "#🎉"]
        for tag in tags:
            assert color_for(tag) in TAG_COLORS

    def test_palette_is_fixed(self):
        assert len(TAG_COLORS) == 7
        assert len(set(TAG_COLORS)) == 7

    def test_empty_input_gets_default(self):
        assert color_for("") == DEFAULT_COLOR
        assert color_for(None) == DEFAULT_COLOR

    def test_case_sensitive(self):
        """Different strings may map to different colors; hash differs."""
        assert tag_hash("#Work") != tag_hash("#work")

"""
Tests for Artifact Adapters

Tests for storyboard_studio/artifact_adapters.py
"""

import json

import pytest

from storyboard_studio.artifact import CharacterSpec, EntityKind, OverallStyle, SceneSpec
from storyboard_studio.artifact_adapters import (
    DEFAULT_STYLE_CONTENT,
    DEFAULT_STYLE_NAME,
    CharacterDraft,
    ExtractedEntities,
    ExtractionError,
    SceneDraft,
    dedupe_by_name,
    drafts_to_items,
    format_profile,
    image_parameters,
    parse_character_prompt,
    parse_entities,
    parse_image_urls,
    parse_scene_prompt,
    parse_style,
    prompt_parameters,
)


class TestParseStyle:
    """Tests for parse_style()."""

    def test_flat_keys(self):
        payload = json.dumps({"风格名称": "赛博朋克", "视觉画风": "厚涂", "风格内容": "霓虹雨夜"}, ensure_ascii=False)
        style = parse_style(payload)
        assert style == OverallStyle(name="赛博朋克", content="霓虹雨夜", painting_style="厚涂")

    def test_stringified_nested_style(self):
        inner = json.dumps({"style_name": "Noir", "painting_style": "ink", "style_content": ["line 1", "line 2"]})
        style = parse_style(json.dumps({"output": inner}))
        assert style.name == "Noir"
        assert style.painting_style == "ink"
        assert style.content == "line 1\nline 2"

    def test_markdown_text(self):
        payload = "**风格名称**: 水墨\n**画面风格**: 国风写意\n**风格内容**: 留白\n远山\n- 结尾"
        style = parse_style(payload)
        assert style.name == "水墨"
        assert style.painting_style == "国风写意"
        assert style.content == "留白\n远山"

    def test_label_values_on_following_lines(self):
        style = parse_style("**风格名称**：\n赛博朋克\n**视觉画风**：\n厚涂")
        assert style.name == "赛博朋克"
        assert style.painting_style == "厚涂"

    def test_content_falls_back_to_remaining_object(self):
        payload = json.dumps({"风格名称": "像素", "视觉画风": "8bit", "色调": "高饱和"}, ensure_ascii=False)
        style = parse_style(payload)
        assert style.name == "像素"
        assert json.loads(style.content) == {"色调": "高饱和"}

    def test_defaults_when_nothing_found(self):
        style = parse_style("{}")
        assert style.name == DEFAULT_STYLE_NAME
        assert style.content == DEFAULT_STYLE_CONTENT
        assert style.painting_style == ""

    def test_free_text_becomes_content(self):
        style = parse_style("一段没有任何标签的风格描述")
        assert style.name == DEFAULT_STYLE_NAME
        assert style.content == "一段没有任何标签的风格描述"

    def test_unicode_escapes_from_regex_are_decoded(self):
        payload = '{"风格名称": "\\u8d5b\\u535a\\u670b\\u514b", "视觉画风": "\\u539a\\u6d82" trailing'
        style = parse_style(payload)
        assert style.name == "赛博朋克"
        assert style.painting_style == "厚涂"


class TestParseEntities:
    """Tests for parse_entities()."""

    ROLE_SCENES = {
        "角色信息": [
            {"name": "林舟", "position": "主角", "background": "退役警探", "features": "风衣"},
            {"姓名": "阿九", "身份": "黑客", "特征": "短发"},
            {"name": "林舟", "position": "重复", "background": "", "features": ""},
            {},
        ],
        "场景信息": [
            {"name": "霓虹小巷", "location": "旧城区", "features": "雨夜"},
            {"名称": "地下酒吧", "地点": "地下"},
        ],
    }

    def test_role_scenes_fenced_string(self):
        fenced = "```json\n" + json.dumps(self.ROLE_SCENES, ensure_ascii=False) + "\n```"
        entities = parse_entities(json.dumps({"role_scenes": fenced}, ensure_ascii=False))

        assert [c.name for c in entities.characters] == ["林舟", "阿九", "未知"]
        first = entities.characters[0]
        assert (first.role, first.setting, first.traits) == ("主角", "退役警探", "风衣")
        assert entities.characters[1].role == "黑客"
        assert entities.characters[2].role == "配角"

        assert [s.name for s in entities.scenes] == ["霓虹小巷", "地下酒吧"]
        assert entities.scenes[1].location == "地下"

    def test_role_scenes_object(self):
        entities = parse_entities(json.dumps({"role_scenes": self.ROLE_SCENES}, ensure_ascii=False))
        assert len(entities.characters) == 3
        assert len(entities.scenes) == 2

    def test_lists_without_role_scenes(self):
        entities = parse_entities(json.dumps(self.ROLE_SCENES, ensure_ascii=False))
        assert len(entities.scenes) == 2

    def test_duplicate_name_keeps_first(self):
        entities = parse_entities(json.dumps({"role_scenes": self.ROLE_SCENES}, ensure_ascii=False))
        lin = [c for c in entities.characters if c.name == "林舟"]
        assert len(lin) == 1
        assert lin[0].role == "主角"

    def test_not_json_is_empty(self):
        assert parse_entities("抱歉，无法解析") == ExtractedEntities()

    def test_dedupe_is_exact_match(self):
        drafts = [SceneDraft(name="A"), SceneDraft(name="a"), SceneDraft(name="A ")]
        assert len(dedupe_by_name(drafts)) == 3

    def test_drafts_to_items(self):
        entities = ExtractedEntities(characters=[CharacterDraft(name="A")], scenes=[SceneDraft(name="S")])
        characters, scenes = drafts_to_items(entities, 1700000000000)
        assert characters[0].id == "char-0-1700000000000"
        assert characters[0].visual_prompt == ""
        assert characters[0].images == []
        assert scenes[0].id == "scene-0-1700000000000"


class TestPrompts:
    """Tests for prompt parameter building and parsing."""

    def test_character_parameters(self):
        style = OverallStyle(name="N", content="C", painting_style="P", reference_image_id="file-1")
        item = CharacterSpec(id="c", name="林舟", role="主角", setting="警探", traits="风衣")
        params = prompt_parameters(EntityKind.CHARACTER, item, style, "剧本")

        assert params["painting_style"] == "P"
        assert params["style"] == "N\nC"
        assert params["script"] == "剧本"
        assert json.loads(params["reference_image"]) == {"file_id": "file-1"}
        assert params["role_info"] == "名称: 林舟\n定位: 主角\n背景设定: 警探\n特征: 风衣"

    def test_scene_parameters(self):
        item = SceneSpec(id="s", name="小巷", location="旧城", traits="雨")
        params = prompt_parameters(EntityKind.SCENE, item, OverallStyle(), "")
        assert params["scene_info"] == "名称: 小巷\n地点: 旧城\n特征: 雨"
        assert "reference_image" not in params

    @pytest.mark.parametrize("key", ["role_promty", "role_prompty", "role_prompt"])
    def test_character_prompt_keys(self, key):
        assert parse_character_prompt(json.dumps({key: "a tall man"})) == "a tall man"

    def test_character_prompt_fenced(self):
        payload = json.dumps({"role_promty": "```json\n{\"pose\": \"standing\"}\n```"})
        assert parse_character_prompt(payload) == '{"pose": "standing"}'

    def test_character_prompt_object(self):
        payload = json.dumps({"role_prompt": {"pose": "standing"}})
        assert json.loads(parse_character_prompt(payload)) == {"pose": "standing"}

    def test_character_prompt_raw_fallback(self):
        assert parse_character_prompt("```\nraw prompt\n```") == "raw prompt"

    def test_scene_prompt(self):
        assert parse_scene_prompt('{"scene_prompt": "rainy alley"}') == "rainy alley"
        assert parse_scene_prompt("just text") == "just text"

    def test_profile_text(self):
        item = SceneSpec(id="s", name="小巷", location="旧城", traits="雨")
        text = format_profile(EntityKind.SCENE, item, "prompt")
        assert text == "【名称】\n小巷\n\n【定位/地点】\n旧城\n\n【特征】\n雨\n\n【提示词】\nprompt"


class TestImages:
    """Tests for image parameters and URL parsing."""

    def test_character_view_size(self):
        params = image_parameters(EntityKind.CHARACTER, "p", "Doubao-Seedream-4.0")
        assert (params["width"], params["height"]) == (2048, 2048)

    def test_scene_size_depends_on_model(self):
        assert image_parameters(EntityKind.SCENE, "p", "Doubao-Seedream-4.0")["width"] == 2560
        v3 = image_parameters(EntityKind.SCENE, "p", "Doubao-Seedream-3.0")
        assert (v3["width"], v3["height"]) == (2048, 1152)

    def test_parse_image_urls(self):
        assert parse_image_urls('{"output": ["https://a"]}') == ["https://a"]

    def test_missing_urls_raise(self):
        with pytest.raises(ExtractionError):
            parse_image_urls('{"msg": "no image"}')

"""Tests for LLM re-ranking and intent-first file inference."""

import asyncio
import json

from bugscope_cli.models import FileCandidate
from bugscope_cli.rerank import (
    extract_file_summary,
    extract_intent,
    infer_files,
    merge_inferred_files,
    project_file_tree,
    rerank_files,
)
from bugscope_cli.schemas import ExtractedIntent, InferredFile


def _summarised_files(directory, scores):
    files = []
    for i, score in enumerate(scores):
        target = directory / f"module{i}.ts"
        target.write_text(
            f"export function handleRequestNumber{i}(request: IncomingRequest) {{ return request; }}\n"
            f"export const settingsForModule{i} = {{ enabled: true }};\n"
        )
        files.append(FileCandidate(path=str(target), size=0, relevance_score=score))
    return files


def _candidate(path, score):
    return FileCandidate(path=str(path.resolve()), size=0, relevance_score=score)


class TestFileSummary:
    """Tests for file summaries."""

    def test_exports_first(self, sample_app):
        """Summaries lead with exports."""
        summary = extract_file_summary(str(sample_app / "src" / "services" / "orderService.ts"))

        lines = summary.split("\n")
        assert lines[0].startswith("export async function submitOrder")
        assert "import { apiClient } from '../api/client';" in lines

    def test_unreadable(self, temp_dir):
        """A missing file has an empty summary."""
        assert extract_file_summary(str(temp_dir / "missing.ts")) == ""


class TestRerankFiles:
    """Tests for the re-ranking blend."""

    def test_blends_and_resorts(self, temp_dir, make_llm):
        """Model scores are blended and the list re-sorted."""
        files = _summarised_files(temp_dir, [50, 40, 30, 20, 0])
        reply = json.dumps([{"path": files[4].path, "score": 50, "reason": "handles the request"}])
        llm = make_llm(texts=[reply])

        result = asyncio.run(rerank_files(llm, files, "title", "body"))

        assert result is not files
        assert result[0].path == files[4].path
        assert result[0].relevance_score == 70
        assert "llm-reranked" in result[0].matched_keywords
        # inputs are left alone
        assert files[4].relevance_score == 0
        assert files[4].matched_keywords == []

    def test_unparseable_reply_returns_same_list(self, temp_dir, make_llm):
        """An unparseable reply returns the input list."""
        files = _summarised_files(temp_dir, [50, 40, 30, 20, 10])
        llm = make_llm(texts=["I think module2 looks suspicious."])

        result = asyncio.run(rerank_files(llm, files, "title", "body"))

        assert result is files
        assert [f.relevance_score for f in result] == [50, 40, 30, 20, 10]

    def test_provider_error_returns_same_list(self, temp_dir, make_llm):
        """A provider error returns the input list."""
        files = _summarised_files(temp_dir, [50, 40, 30, 20, 10])

        assert asyncio.run(rerank_files(make_llm(), files, "title", "body")) is files

    def test_too_few_files_skips_model(self, temp_dir, make_llm):
        """Short lists are not re-ranked."""
        files = _summarised_files(temp_dir, [50, 40, 30])
        llm = make_llm(texts=["[]"])

        assert asyncio.run(rerank_files(llm, files, "title", "body")) is files
        assert llm.prompts == []

    def test_no_model(self, temp_dir):
        """Without a model nothing changes."""
        files = _summarised_files(temp_dir, [50, 40, 30, 20, 10])

        assert asyncio.run(rerank_files(None, files, "title", "body")) is files


class TestIntentInference:
    """Tests for intent extraction and file inference."""

    def test_extract_intent(self, make_llm):
        """Intent is parsed from the reply."""
        payload = {
            "user_action": "click checkout",
            "inferred_features": ["CheckoutButton"],
            "ui_elements": ["button"],
            "confidence": 80,
        }
        llm = make_llm(texts=["```json\n" + json.dumps(payload) + "\n```"])

        intent = asyncio.run(extract_intent(llm, "Checkout broken", "Nothing happens"))

        assert intent.user_action == "click checkout"
        assert intent.inferred_features == ["CheckoutButton"]
        assert intent.page_context is None

    def test_extract_intent_garbage(self, make_llm):
        """A garbage reply gives no intent."""
        assert asyncio.run(extract_intent(make_llm(texts=["no idea"]), "t", "b")) is None

    def test_extract_intent_unavailable(self, make_llm):
        """An unavailable model gives no intent."""
        assert asyncio.run(extract_intent(make_llm(), "t", "b")) is None
        assert asyncio.run(extract_intent(None, "t", "b")) is None

    def test_infer_files_skips_invalid_entries(self, make_llm):
        """Malformed inferred entries are skipped."""
        reply = json.dumps([
            {"path": "src/components/CheckoutButton.tsx", "reason": "button", "relevance_score": 90},
            {"path": "src/bogus.ts", "relevance_score": 500},
            {"reason": "no path"},
        ])
        llm = make_llm(texts=[reply])

        inferred = asyncio.run(infer_files(llm, ExtractedIntent(), "src/components/CheckoutButton.tsx"))

        assert [f.path for f in inferred] == ["src/components/CheckoutButton.tsx"]

    def test_infer_files_needs_tree(self, make_llm):
        """No file tree means no inference."""
        llm = make_llm(texts=["[]"])

        assert asyncio.run(infer_files(llm, ExtractedIntent(), "")) == []
        assert llm.prompts == []


class TestProjectFileTree:
    """Tests for the project listing."""

    def test_directories_first(self, sample_app):
        """Each directory is listed before its files."""
        lines = project_file_tree(str(sample_app)).split("\n")

        assert lines[0] == "src/"
        assert "src/components/CheckoutButton.tsx" in lines
        assert not any("node_modules" in line for line in lines)
        components = lines.index("src/components/")
        assert components < lines.index("src/components/CheckoutButton.tsx")

    def test_max_files(self, sample_app):
        """The tree stops at max_files."""
        assert project_file_tree(str(sample_app), max_files=3).split("\n") == ["src/", "src/api/", "src/api/client.ts"]

    def test_missing_directory(self, temp_dir):
        """A missing directory gives an empty tree."""
        assert project_file_tree(str(temp_dir / "nope")) == ""


class TestMergeInferredFiles:
    """Tests for merging inferred files into discovered candidates."""

    def test_duplicate_keeps_higher_score(self, sample_app):
        """A duplicate keeps its higher discovered score."""
        service = _candidate(sample_app / "src" / "services" / "orderService.ts", 100)
        inferred = [InferredFile(path="src/services/orderService.ts", reason="places the order", relevance_score=30)]

        result = merge_inferred_files(inferred, [service], str(sample_app))

        assert len(result) == 1
        assert result[0].relevance_score == 100
        assert result[0].matched_keywords == ["llm-inferred:places the order"]

    def test_duplicate_raised_by_weighted_score(self, sample_app):
        """A duplicate takes the weighted inferred score when higher."""
        service = _candidate(sample_app / "src" / "services" / "orderService.ts", 20)
        inferred = [InferredFile(path="./src/services/orderService.ts", relevance_score=40)]

        result = merge_inferred_files(inferred, [service], str(sample_app))

        assert result[0].relevance_score == 80

    def test_novel_file_added(self, sample_app):
        """An inferred file not discovered is added."""
        service = _candidate(sample_app / "src" / "services" / "orderService.ts", 100)
        reason = "formats the price shown on the button label"
        inferred = [InferredFile(path="src/utils/format.ts", reason=reason, relevance_score=35)]

        result = merge_inferred_files(inferred, [service], str(sample_app))

        added = [c for c in result if c.path.endswith("format.ts")][0]
        assert added.relevance_score == 70
        assert added.matched_keywords == [f"llm-inferred:{reason[:30]}"]

    def test_nothing_merged_returns_discovered(self, sample_app):
        """With nothing inferred the discovered list is returned."""
        discovered = [_candidate(sample_app / "src" / "services" / "orderService.ts", 5)]
        inferred = [
            InferredFile(path="src/does/not/exist.ts", relevance_score=90),
            InferredFile(path="../../outside.ts", relevance_score=90),
        ]

        assert merge_inferred_files(inferred, discovered, str(sample_app)) is discovered

    def test_complement_rules(self, sample_app):
        """Only discovered files scoring at least 10 complement the merge."""
        low = _candidate(sample_app / "src" / "pages" / "settings.tsx", 5)
        high = _candidate(sample_app / "src" / "api" / "client.ts", 50)
        inferred = [InferredFile(path="src/utils/format.ts", relevance_score=10)]

        result = merge_inferred_files(inferred, [low, high], str(sample_app))

        names = [c.path.rsplit("/", 1)[-1] for c in result]
        assert names == ["client.ts", "format.ts"]

    def test_complement_cap(self, sample_app):
        """The complement is capped."""
        discovered = [
            _candidate(sample_app / "src" / "pages" / "settings.tsx", 40),
            _candidate(sample_app / "src" / "api" / "client.ts", 50),
        ]
        inferred = [InferredFile(path="src/utils/format.ts", relevance_score=10)]

        result = merge_inferred_files(inferred, discovered, str(sample_app), max_complement=1)

        assert len(result) == 2
        assert result[0].path.endswith("client.ts")

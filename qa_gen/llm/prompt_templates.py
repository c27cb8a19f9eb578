"""Centralized prompt templates for all LLM interactions.

All prompts use {placeholders} for runtime values.  Use .format() (not f-strings)
to avoid accidental injection from user content.  Literal JSON braces in
the templates are therefore doubled.
"""

from __future__ import annotations

# ── Generation ───────────────────────────────────────────────────────

GENERATION_SYSTEM_PROMPT = """\
あなたはソフトウェア品質保証の専門家です。15年以上のQA経験を持ち、\
E2Eテスト設計・境界値分析・同値分割・デシジョンテーブル・状態遷移テストに精通しています。
提供されたシステム仕様・設計書・サイト構造・ソースコードを分析し、\
品質を担保するための網羅的なテスト項目書を日本語で作成してください。
必ずJSON形式のみで回答し、それ以外のテキストは含めないでください。"""

NO_EVIDENCE_FALLBACK = (
    "※ 参考資料なし。一般的なWebシステムとしてテスト項目を生成してください。"
    "この場合 sourceRefs は空配列にしてください。"
)

GENERATION_USER_PROMPT = """\
プロジェクト名: {project_name}
テスト対象システム: {target_system}
テスト観点: {perspectives}
生成件数: 必ず{target_count}件ちょうど出力してください。
{weights_block}{focus_block}{titles_block}
【参考資料（RAG検索結果）】
{context}

【参照マップ】
{reference_map}

各テスト項目には、根拠とした参考資料の refId（上記の REF-N のみ）を sourceRefs に記載してください。
参照マップに存在しない refId を作らないでください。

上記を元に、テスト項目を以下のJSON配列形式で出力してください。他のテキストは一切含めず、JSONのみ返してください。

[
  {{
    "categoryMajor": "大分類（例: ログイン機能）",
    "categoryMinor": "中分類（例: 正常系）",
    "testPerspective": "テスト観点（{perspective_enum}のいずれか）",
    "testTitle": "テスト項目名（50文字以内）",
    "precondition": "事前条件",
    "steps": ["手順1", "手順2", "手順3"],
    "expectedResult": "期待結果",
    "priority": "HIGH または MEDIUM または LOW",
    "automatable": "YES または NO または CONSIDER",
    "sourceRefs": [{{"refId": "REF-1", "relevance": "この資料を根拠とした理由"}}]
  }}
]"""

WEIGHTS_BLOCK = "観点別件数:\n{lines}\n"

FOCUS_BLOCK = (
    "対象ページ（以下のページに限定してテスト項目を作成してください）:\n{lines}\n"
)

TITLES_BLOCK = (
    "このバッチで作成するテスト項目名（この順に、各1件ずつ作成してください）:\n{lines}\n"
)

# ── Planning ─────────────────────────────────────────────────────────

PLANNING_SYSTEM_PROMPT = """\
あなたはテスト設計のリードエンジニアです。
提供された資料を分析し、テスト項目書の作成計画をバッチ単位で立案してください。
必ずJSON形式のみで回答し、それ以外のテキストは含めないでください。"""

PLANNING_USER_PROMPT = """\
プロジェクト名: {project_name}
テスト対象システム: {target_system}
テスト観点: {perspectives}
総件数: {total_items}件
1バッチあたりの件数: {batch_size}件（バッチ数: {batch_count}）
{weights_block}{focus_block}
【参考資料（RAG検索結果）】
{context}

【参照マップ】
{reference_map}

総件数を{batch_count}個のバッチに分割し、各バッチのカテゴリ・観点・テスト項目名を提案してください。
各バッチの titles の件数がそのバッチの生成件数になります。
以下のJSON配列形式のみで出力してください。

[
  {{
    "batchId": 1,
    "category": "大分類（例: ログイン機能）",
    "perspective": "テスト観点（{perspective_enum}のいずれか）",
    "titles": ["テスト項目名1", "テスト項目名2"],
    "count": 2
  }}
]"""

# ── Review ───────────────────────────────────────────────────────────

REVIEW_SYSTEM_PROMPT = """\
あなたはソフトウェアテスト品質保証の第三者評価専門家です。
ISO/IEC 25010、ISO/IEC/IEEE 29119、OWASP ASVS、ISTQBの各標準に精通し、
テスト設計の妥当性を定量的かつ客観的に評価します。
自己正当化バイアスを排除し、第三者視点で厳正に評価してください。
必ずJSON形式のみで回答し、説明文やコードブロックは含めないでください。"""

REVIEW_USER_PROMPT = """\
以下のテスト設計を第三者評価してください。

【テスト項目概要】
総件数: {total}件
カテゴリ: {majors}
テスト観点: {perspectives}

【テスト項目リスト（先頭{shown}件）】
{items_summary}

以下の形式でJSONのみ出力してください:
{{
  "coverageScore": {{
    "iso25010": 0.0から1.0,
    "iso29119": 0.0から1.0,
    "owasp": 0.0から1.0,
    "istqb": 0.0から1.0
  }},
  "missingPerspectives": ["不足している観点1", "不足している観点2"],
  "defectRiskAnalysis": "欠陥混入リスク分析の説明文（300文字以内）",
  "improvementSuggestions": ["改善提案1", "改善提案2", "改善提案3"],
  "heatmap": [
    {{
      "category": "カテゴリ名",
      "riskLevel": "critical|high|medium|low",
      "score": 0.0から1.0,
      "reason": "リスク理由（100文字以内）"
    }}
  ],
  "coverageMissingAreas": [
    {{
      "area": "不足領域名",
      "severity": "critical|high|medium",
      "description": "不足内容の説明（150文字以内）",
      "suggestedTests": ["追加すべきテスト1", "追加すべきテスト2"],
      "relatedStandard": "関連標準（ISO25010/ISO29119/OWASP/ISTQB）"
    }}
  ]
}}

評価基準:
- iso25010: 機能性・信頼性・使用性・効率性・保守性・移植性の各品質特性のカバレッジ
- iso29119: テスト計画・設計・実行・報告の標準手順適合度
- owasp: OWASP ASVSのセキュリティ検証項目カバレッジ
- istqb: 同値分割・境界値分析・デシジョンテーブル・状態遷移などのテスト技法適用率
- heatmapはカテゴリごとの欠陥リスクを分析（scoreが高いほどリスク大）"""

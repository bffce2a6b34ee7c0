"""Deterministic demo backend: a six-question high-school maths exam.

Used by the CLI when ``backend.kind`` is ``mock`` and by the test-suite. It
simulates latency, lets callers inject per-item and per-artifact failures, and
grades a "typical student" who gets questions 2, 5 and 6 wrong.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Dict, Iterable, List, Sequence

from apps.orchestrator.models import (
    AnalysisResult,
    Answer,
    AnswerOutcome,
    Graded,
    PartialAnswer,
    PartialQuestion,
    Question,
    SourceArtifact,
    StudentResult,
)

from .protocol import AnalysisError, SplitError

LOGGER = logging.getLogger(__name__)

MAX_SCORE = 12
BATCH_MAX_SCORE = 10
INCORRECT_ORDINALS = {2: 4, 5: 2, 6: 6}
SUBJECT_NAMES = ["李华", "王伟", "张敏", "刘洋", "陈静", "杨强", "赵丽", "孙凯", "周杰", "吴娜"]

FALLBACK_CHAPTERS = [
    "必修第一册 第3章 - 函数的概念与性质",
    "必修第一册 第4章 - 指数函数与对数函数",
    "必修第二册 第6章 - 平面向量及其应用",
    "选择性必修第二册 第4章 - 数列",
    "选择性必修第三册 第7章 - 随机变量及其分布",
]
FALLBACK_KNOWLEDGE = ["利用导数研究函数的单调性", "椭圆的标准方程", "函数的零点"]
FALLBACK_METHODS = ["数形结合思想", "分类讨论思想"]
FALLBACK_COMPETENCIES = ["数学抽象", "逻辑推理"]

PREDEFINED_QUESTIONS: List[Dict[str, Any]] = [
    {
        "content": (
            "**第 1 题（三角函数）：**\n在 $\\triangle ABC$ 中，角 $A, B, C$ 所对的边分别为 $a, b, c$。"
            "已知 $2b \\cos C = 2a - c$。\n(1) 求角 $B$ 的大小；\n"
            "(2) 若 $b=3$，$\\triangle ABC$ 的面积为 $\\frac{3\\sqrt{3}}{4}$，求 $a+c$ 的值。"
        ),
        "difficulty": 4,
        "chapter": "必修第二册 第6章 - 平面向量及其应用",
        "knowledge_points": ["正弦定理与余弦定理", "三角形面积公式"],
        "methods": ["转化与化归思想"],
        "competencies": ["数学运算", "逻辑推理"],
        "answer": "解：(1) 由正弦定理得 $2\\sin B \\cos C = 2\\sin A - \\sin C$...",
    },
    {
        "content": (
            "**第 2 题（立体几何）：**\n如图，在四棱锥 $P-ABCD$ 中，底面 $ABCD$ 是矩形，$PA \\perp$ 平面 $ABCD$，"
            "$PA=AD=2$，点 $E$ 是棱 $PD$ 的中点。\n(1) 证明：$AE \\perp$ 平面 $PCD$；\n"
            "(2) 求直线 $PC$ 与平面 $ACE$ 所成角的正弦值。"
        ),
        "difficulty": 6,
        "chapter": "必修第二册 第8章 - 立体几何初步",
        "knowledge_points": ["线面垂直的判定", "线面角的计算", "空间向量的应用"],
        "methods": ["坐标法", "数形结合思想"],
        "competencies": ["直观想象", "逻辑推理"],
        "answer": "证明：(1) 取 $AD$ 中点 $F$，连接 $EF$。因为 $E$ 为 $PD$ 中点...",
        "feedback": "第(1)问证明过程正确；第(2)问建系坐标计算有误，导致法向量求错，后续结果均不正确。",
    },
    {
        "content": (
            "**第 3 题（概率统计）：**\n某工厂生产某种零件，现有甲、乙两条生产线。为了检测生产质量，"
            "从甲、乙线各随机抽取 100 个零件进行检测。规定尺寸在 $[20, 30]$ 内为合格品。\n"
            "(1) 试分别估计甲、乙两线生产的零件为合格品的概率；\n"
            "(2) 若从乙线抽出 2 件，求利润 $X$ 的分布列和数学期望。"
        ),
        "difficulty": 5,
        "chapter": "选择性必修第三册 第7章 - 随机变量及其分布",
        "knowledge_points": ["离散型随机变量的期望与方差", "古典概型"],
        "methods": ["数学建模"],
        "competencies": ["数据分析", "数学运算"],
        "answer": "解：(1) 甲线合格概率 $P_1 = \\frac{96}{100} = 0.96$...",
    },
    {
        "content": (
            "**第 4 题（数列）：**\n已知数列 $\\{a_n\\}$ 的前 $n$ 项和为 $S_n$，且满足 $S_n = 2a_n - 2$。\n"
            "(1) 求数列 $\\{a_n\\}$ 的通项公式；\n"
            "(2) 设 $b_n = \\log_2 a_n$，求数列 $\\{\\frac{1}{b_n b_{n+1}}\\}$ 的前 $n$ 项和 $T_n$。"
        ),
        "difficulty": 6,
        "chapter": "选择性必修第二册 第4章 - 数列",
        "knowledge_points": ["等比数列的通项公式", "裂项相消法求和"],
        "methods": ["转化与化归思想", "公式法"],
        "competencies": ["数学运算", "逻辑推理"],
        "answer": "解：(1) 当 $n=1$ 时，$S_1 = 2a_1 - 2$，解得 $a_1=2$...",
    },
    {
        "content": (
            "**第 5 题（圆锥曲线）：**\n已知椭圆 $C: \\frac{x^2}{a^2} + \\frac{y^2}{b^2} = 1 (a>b>0)$ 的离心率为 "
            "$\\frac{\\sqrt{2}}{2}$。\n(1) 求椭圆 $C$ 的方程；\n"
            "(2) 若直线 $PA$ 与 $PB$ 的斜率之和为 -1，证明直线 $l$ 过定点。"
        ),
        "difficulty": 9,
        "chapter": "选择性必修第一册 第3章 - 圆锥曲线的方程",
        "knowledge_points": ["椭圆的标准方程", "直线与圆锥曲线的位置关系", "定点问题"],
        "methods": ["设而不求", "坐标法", "函数与方程思想"],
        "competencies": ["数学运算", "逻辑推理"],
        "answer": "解：(1) 设椭圆方程为 $\\frac{x^2}{a^2} + \\frac{y^2}{b^2} = 1$...",
        "feedback": "第(1)问方程求对。第(2)问在联立直线与椭圆方程时，韦达定理符号写反，导致无法证明定点。",
    },
    {
        "content": (
            "**第 6 题（导数）：**\n已知函数 $f(x) = x \\ln x - ax$。\n(1) 当 $a=1$ 时，求 $f(x)$ 的极值；\n"
            "(2) 若 $f(x)$ 有两个零点，求实数 $a$ 的取值范围。"
        ),
        "difficulty": 8,
        "chapter": "选择性必修第二册 第5章 - 一元函数导数及其应用",
        "knowledge_points": ["利用导数研究函数的单调性", "利用导数研究函数的极值", "函数的零点"],
        "methods": ["分类讨论思想", "数形结合思想"],
        "competencies": ["数学抽象", "逻辑推理", "数学运算"],
        "answer": "解：定义域为 $(0, +\\infty)$。求导得 $f'(x) = \\ln x + 1 - a$...",
        "feedback": "第(1)问正确。第(2)问分类讨论遗漏了 $a \\le 0$ 的情况，定义域考虑不周全。",
    },
]

CORRECT_FEEDBACK = "步骤清晰，逻辑严密，得数正确。"
UNANSWERED = "（学生未作答）"


def _template_for(content: str) -> Dict[str, Any] | None:
    for template in PREDEFINED_QUESTIONS:
        if template["content"][:10] in content:
            return template
    return None


class MockAnalysisBackend:
    """In-process ``AnalysisBackend`` with scripted answers.

    ``fail_question_ordinals`` / ``fail_answer_ordinals`` make the matching
    analyze calls raise ``AnalysisError``; artifacts whose name is listed in
    ``fail_artifacts`` fail to split.
    """

    def __init__(
        self,
        *,
        latency: float = 0.0,
        seed: int | None = None,
        fail_question_ordinals: Iterable[int] = (),
        fail_answer_ordinals: Iterable[int] = (),
        fail_artifacts: Iterable[str] = (),
    ) -> None:
        self.latency = latency
        self._random = random.Random(seed)
        self.fail_question_ordinals = set(fail_question_ordinals)
        self.fail_answer_ordinals = set(fail_answer_ordinals)
        self.fail_artifacts = set(fail_artifacts)
        self.calls: List[str] = []

    async def _delay(self, scale: float = 1.0) -> None:
        if self.latency <= 0:
            await asyncio.sleep(0)
            return
        await asyncio.sleep(self.latency * scale * (0.8 + self._random.random() * 1.5))

    def _check_artifact(self, artifact: SourceArtifact) -> None:
        if artifact.name in self.fail_artifacts:
            raise SplitError(f"could not read {artifact.name}")

    async def split_exam(self, artifact: SourceArtifact) -> List[PartialQuestion]:
        self.calls.append(f"split_exam:{artifact.name}")
        await self._delay()
        self._check_artifact(artifact)
        return [
            PartialQuestion(source_content=template["content"], image_ref=f"mock://questions/{index}.jpeg")
            for index, template in enumerate(PREDEFINED_QUESTIONS, start=1)
        ]

    async def analyze_question(self, question_id: str, content: str) -> AnalysisResult:
        self.calls.append(f"analyze_question:{question_id}")
        await self._delay()
        template = _template_for(content)
        if template is None:
            return AnalysisResult(
                chapter=self._random.choice(FALLBACK_CHAPTERS),
                difficulty=5,
                knowledge_points=FALLBACK_KNOWLEDGE[:2],
                methods=FALLBACK_METHODS[:1],
                competencies=FALLBACK_COMPETENCIES[:1],
            )
        ordinal = PREDEFINED_QUESTIONS.index(template) + 1
        if ordinal in self.fail_question_ordinals:
            raise AnalysisError(f"analysis service rejected question {ordinal}")
        return AnalysisResult(
            chapter=template["chapter"],
            difficulty=template["difficulty"],
            knowledge_points=template["knowledge_points"],
            methods=template["methods"],
            competencies=template["competencies"],
        )

    async def split_student_answers(
        self,
        artifact: SourceArtifact,
        questions: Sequence[Question],
    ) -> List[PartialAnswer]:
        self.calls.append(f"split_student_answers:{artifact.name}")
        await self._delay()
        self._check_artifact(artifact)
        partials = []
        for index, question in enumerate(questions):
            content = PREDEFINED_QUESTIONS[index]["answer"] if index < len(PREDEFINED_QUESTIONS) else UNANSWERED
            partials.append(PartialAnswer(answer_content=content, image_ref=question.image_ref))
        return partials

    async def analyze_student_answer(self, question: Question, answer_content: str) -> AnswerOutcome:
        self.calls.append(f"analyze_student_answer:{question.id}")
        await self._delay(1.5)
        if question.ordinal in self.fail_answer_ordinals:
            raise AnalysisError(f"grading service rejected answer {question.ordinal}")
        analysis = question.analysis
        knowledge = list(analysis.knowledge_points) if analysis else []
        methods = list(analysis.methods) if analysis else []
        if question.ordinal not in INCORRECT_ORDINALS:
            return AnswerOutcome(
                is_correct=True,
                score=MAX_SCORE,
                max_score=MAX_SCORE,
                feedback=CORRECT_FEEDBACK,
                mastered_points=knowledge,
                mastered_methods=methods,
            )
        template = PREDEFINED_QUESTIONS[question.ordinal - 1]
        return AnswerOutcome(
            is_correct=False,
            score=INCORRECT_ORDINALS[question.ordinal],
            max_score=MAX_SCORE,
            feedback=template.get("feedback", ""),
            mastered_points=knowledge[:1],
            missing_points=knowledge[1:],
            missing_methods=methods,
        )

    async def batch_split_and_analyze(
        self,
        artifacts: Sequence[SourceArtifact],
        questions: Sequence[Question],
    ) -> List[StudentResult]:
        """Grade every artifact at once with roughly 60% of answers correct."""
        self.calls.append(f"batch_split_and_analyze:{len(artifacts)}")
        await self._delay(2.0)
        results: List[StudentResult] = []
        for position, artifact in enumerate(artifacts):
            self._check_artifact(artifact)
            name = SUBJECT_NAMES[position % len(SUBJECT_NAMES)]
            if position >= len(SUBJECT_NAMES):
                name = f"{name} {position + 1}"
            answers = []
            for question in questions:
                correct = self._random.random() > 0.4
                knowledge = list(question.analysis.knowledge_points) if question.analysis else []
                methods = list(question.analysis.methods) if question.analysis else []
                answers.append(
                    Answer(
                        question_id=question.id,
                        image_ref=question.image_ref,
                        answer_content="解：步骤略，结果正确。" if correct else "解：尝试推导公式，但计算过程出现偏差...",
                        state=Graded(),
                        is_correct=correct,
                        score=BATCH_MAX_SCORE if correct else self._random.randint(0, 4),
                        max_score=BATCH_MAX_SCORE,
                        feedback="回答正确。" if correct else "关键步骤缺失，需加强练习。",
                        mastered_points=knowledge if correct else knowledge[:1],
                        missing_points=[] if correct else knowledge[1:],
                        mastered_methods=methods if correct else [],
                        missing_methods=[] if correct else methods,
                    )
                )
            results.append(StudentResult(position=position, subject_name=name, answers=tuple(answers)))
        LOGGER.debug("Mock batch graded %d subjects", len(results))
        return results


__all__ = ["MockAnalysisBackend", "PREDEFINED_QUESTIONS", "SUBJECT_NAMES"]

"""
Gemini Prompts for Clew

Gemini plays two roles in the debugging pipeline:
1. Error Analyzer - classifies an error and names its root cause
2. Principle Extractor - turns one successful fix into a reusable rule

Both prompts demand a bare JSON object so the client can parse it.
"""

ANALYZER_SYSTEM_PROMPT = """You are an expert debugging assistant.

You read error messages and stack traces from any language or framework and
explain what went wrong. You answer ONLY with the JSON object requested,
never with prose, markdown or code fences."""

ERROR_ANALYSIS_PROMPT = """Analyze this error deeply and classify it.

ERROR MESSAGE:
{error_message}

STACK TRACE:
{stack_trace}

Return ONLY a JSON object with this structure:
{{
  "classification": "syntax|dependency|logic|async|state|unknown",
  "rootCause": "Brief explanation of what went wrong",
  "patterns": ["Pattern 1", "Pattern 2"],
  "confidence": 0.0-1.0
}}

Think step-by-step:
1. What type of error is this?
2. What patterns do you see in the stack trace?
3. What is the likely root cause?

Return ONLY valid JSON, no other text."""

PRINCIPLE_EXTRACTION_PROMPT = """Extract a reusable debugging principle from a successful fix.

ORIGINAL ERROR:
Type: {classification}
Message: {error_message}
Root Cause: {root_cause}

SOLUTION THAT WORKED:
{solution}

EXTRACT a general principle that can apply to similar errors.

FORMAT: "When [condition], then [action]"
CATEGORY: Choose from: async, dependency, state, logic, syntax, other

Return ONLY a JSON object:
{{
  "principle": "When [specific pattern], then [general solution]",
  "category": "async|dependency|state|logic|syntax|other",
  "reasoning": "Why this principle generalizes",
  "confidence": 0.0-1.0
}}

Make it actionable and reusable. Think step-by-step:
1. What was the underlying pattern?
2. How can this apply to other situations?
3. What's the general rule?

Return ONLY valid JSON."""

NO_STACK_TRACE = "No stack trace provided"

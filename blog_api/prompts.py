"""Prompt templates for the AI writing helpers."""

SYSTEM_PROMPT = "You are a helpful writing assistant for a technical blog."


def blog_post_prompt(title: str, tone: str) -> str:
    return (
        f'Write a markdown-formatted blog post titled "{title}". Use a {tone} tone. '
        "Include an introduction, subheadings, code examples if relevant, and a conclusion."
    )


def blog_post_ideas_prompt(topics: str) -> str:
    return f"""Generate a list of 5 blog post ideas related to {topics}.

For each blog post idea, return:
- a title
- a 2-line description about the post
- 3 relevant tags
- the tone (e.g., technical, casual, beginner-friendly, etc.)

Return the result as an array of JSON objects in the format:
[
  {{
    "title": "",
    "description": "",
    "tags": ["", "", ""],
    "tone": ""
  }}
]
Important: Do NOT add any extra text outside the JSON format. Only return valid JSON."""


def comment_reply_prompt(content: str, author: str | None = None) -> str:
    return f"""You're replying to a blog comment by {author or "User"}. The comment says:

"{content}"

Write a thoughtful, concise, and relevant reply to this comment."""


def blog_summary_prompt(content: str) -> str:
    return f"""You are an AI assistant that summarizes blog posts.

Instructions:
- Read the blog post content below.
- Generate a short, catchy, SEO-friendly title (max 12 words).
- Write a clear, engaging summary of about 300 words.
- At the end of the summary, add a markdown section titled "## What You'll Learn".
- Under that heading, list 3-5 key takeaways in bullet points using markdown (`-`).

Return the results in valid JSON with the following structure:

{{
  "title": "Short SEO-friendly title",
  "summary": "300-words summary with a markdown section for What You'll Learn"
}}

Only return valid JSON. Do not include markdown or code blocks around the JSON.

Blog Post Content:
{content}"""

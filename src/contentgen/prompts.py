from __future__ import annotations

from .models import Profile

PROMPT_NAME = "generate_posts_v1"

REPAIR_SUFFIX = (
    "\n\nReturn valid JSON only. Your previous answer could not be parsed. "
    "Respond with a single JSON array of post objects and nothing else."
)

_ITEM_FORMAT = """[
  {
    "title": "A short summary of the post concept.",
    "body": "The full caption, including emojis and relevant hashtags.",
    "tags": ["hashtag", "topic"],
    "media_suggestion": "A photo description or a short video concept to go with the post."
  }
]"""


def render_generation_prompt(profile: Profile, post_count: int) -> str:
    subject = "creator" if profile.kind == "influencer" else "brand"
    context = (
        "You are an expert social media manager acting as a JSON API. "
        f"Generate a batch of {post_count} social media post ideas for the following {subject}. "
        "Your entire response must be valid JSON without any markdown formatting, "
        "backticks or explanatory text."
    )
    profile_info = "\n".join(
        [
            f"Name: {profile.brand_name}",
            f"Industry: {profile.industry or 'Not specified'}",
            f"Description: {profile.brand_description or 'Not specified'}",
            f"Voice: {profile.brand_voice_description or 'Not specified'}",
            f"Primary goal: {profile.primary_goal or 'Not specified'}",
        ]
    )
    rules = "\n".join(
        [
            "Content rules:",
            f"- DO: {profile.do_rules or 'Follow the ' + subject + ' tone.'}",
            f"- DO NOT: {profile.dont_rules or 'Create generic or boring content.'}",
            "- Mix content types based on the primary goal "
            "(promotional, educational, behind-the-scenes).",
        ]
    )
    output_format = (
        f"Output format: a JSON array with exactly {post_count} objects, each shaped like:\n"
        f"{_ITEM_FORMAT}"
    )
    return "\n\n".join([context, profile_info, rules, output_format])


def render_repair_prompt(prompt: str) -> str:
    return prompt + REPAIR_SUFFIX

"""
Prompt templates.

SEARCH_PROMPT_TEMPLATE wraps search results into a citation-style answer
request. REWRITE_PROMPT_TEMPLATE asks a model to turn a chat turn into a
search-engine query. ARTIFACTS_PROMPT is appended to the system prompt when
a conversation has artifacts enabled.
"""

SEARCH_PROMPT_TEMPLATE = """You are an expert in organizing search results.Write an accurate answer concisely for a given question, citing the search results as needed. Your answer must be correct, high-quality, and written by an expert using an unbiased and journalistic tone. Your answer must be written in the same language as the question, even if language preference is different. Cite search results using [index] at the end of sentences when needed, for example "Ice is less dense than water.[1][2]" NO SPACE between the last word and the citation. Cite the most relevant results that answer the question. Avoid citing irrelevant results. Write only the response. Use markdown for formatting.

- Use markdown to format paragraphs, lists, tables, and quotes whenever possible.
- Use markdown code blocks to write code, including the language for syntax highlighting.
- Use LaTeX to wrap ALL math expression. Always use double dollar signs $$, for example $$x^4 = x - 3$$.
- DO NOT include any URL's, only include citations with numbers, eg [1].
- DO NOT include references (URL's at the end, sources).
- Use footnote citations at the end of applicable sentences(e.g, [1][2]).
- Write more than 100 words (2 paragraphs).
- In the response avoid referencing the citation directly
- Print just the response text.
<search_results>
{{SEARCH_RESULTS}}
</search_results>
<user_query>
{{USER_QUERY}}
</user_query>
"""

REWRITE_PROMPT_TEMPLATE = """You are a search optimization expert. Based on the content below, produce one optimized search query.

Current time: {current_time}
Search engine: {search_engine}

Rewrite the search query following these rules:
1. Use the user's question and the conversation context to decide which keywords should actually be searched.
2. If the question depends on time, derive concrete dates from the current time.
3. For programming questions:
    - add the programming language or framework name
    - include specific error codes or version numbers
4. Keep the query short, usually no more than 5-6 keywords.
5. Keep the language of the user's question by default: a Chinese question gets a Chinese query, an English question an English query, and so on for other languages.
6. If the user's content is a trivial string or word with no particular meaning, return it unchanged and ignore rules 1-5.

Return only the optimized search query, with no extra explanation.
Context of the conversation so far:
<context_messages>
{context_messages}
</context_messages>
The user's question:
<user_question>
{query}
</user_question>
"""

ARTIFACTS_PROMPT = """You can create artifacts: self-contained pieces of content the user may want to view, reuse or edit separately from the conversation, such as documents, code files, SVG images, Mermaid diagrams or single-page HTML.

Wrap each artifact in an <antArtifact> tag with these attributes:
- identifier: a short kebab-case id, reused when updating the same artifact
- type: one of application/vnd.ant.code, text/markdown, text/html, image/svg+xml, application/vnd.ant.mermaid
- title: a brief human-readable title
- language: the programming language, for code artifacts only

Only create an artifact when the content is substantial (roughly 15 lines or more) and likely to be reused. Keep short snippets, explanations and conversational answers inline. Never put more than one artifact in a single tag, and always write the complete content rather than a partial diff."""

TITLE_PROMPT = """Summarize the conversation below into a title of at most 10 words, in the language the user writes in. Return only the title, with no quotes or punctuation at the end.

{conversation}"""

# architect

The planning and review side of a coding-agent orchestrator. It keeps a queue of
work stories, turns a markdown specification into story files, answers or
escalates questions from coding agents, and reviews their code submissions.

It has no dependencies beyond the standard library.

## Install

```
pip install .
pip install ".[test]"   # with pytest
```

## Modules

### `architect.queue`

`Queue` holds `QueuedStory` objects keyed by id. Each story has a `StoryStatus`:
`pending`, `in_progress`, `waiting_review`, `completed`, `blocked`, `cancelled`
or `await_human_feedback`.

- `load_from_directory()` reads every `*.md` file in the stories directory.
  Each file must start with a front-matter block. `parse_front_matter` reads
  `id`, `title`, `depends_on` (an inline list) and `est_points` from it. Points
  outside 1–5 become 2. A missing `id` or `title` raises `FrontMatterError`.
  Files that fail to parse are logged and skipped.
- `ready_stories()` returns pending stories whose dependencies are all
  completed. `next_ready_story()` returns the one with the fewest points, with
  ties broken by id.
- `mark_in_progress`, `mark_waiting_review`, `mark_completed`, `mark_blocked`
  and `mark_await_human_feedback` change a story's status. An unknown id raises
  `StoryNotFoundError`. A move the story's current status does not allow raises
  `InvalidTransitionError`.
- `set_ready_channel(q)` takes a `queue.Queue`. After loading and after each
  completion, the ids of ready stories are put on it without blocking.
- `detect_cycles()`, `summary()`, `all_stories()`, `stories_by_status()`,
  `to_json()` and `from_json()` report on the queue and serialise it.

### `architect.spec`

`SpecParser(stories_dir)` splits a specification into `Requirement`s at its
`##` (or deeper) headers. It skips headers such as "Overview" or "Table of
Contents" and ignores fenced code blocks.

Bullet and numbered items are read as follows:

- after a line that mentions "acceptance criteria" or "requirements", they
  become acceptance criteria;
- anywhere else, they go into the description.

`estimate_points` gives 1–3 points from title keywords and section length.
`process_spec_file(path)` writes one story file per requirement, numbered from
`050.md`, or from one past the highest existing `NNN.md`. It returns the
`StoryFile`s it wrote. Failures raise `SpecError`.

### `architect.escalation`

`EscalationHandler(logs_dir, queue)` records escalations as `EscalationEntry`
objects. It appends each one as a JSON line to `logs_dir/escalations.jsonl`,
reloads that file on start, and marks the story `await_human_feedback`.

- `escalate_business_question` sets the priority from keywords in the question,
  using `determine_priority`.
- `escalate_review_failure` always uses priority `high`.
- `escalate_system_error` always uses priority `critical`.
- `get_escalations(status)` returns entries newest first.
- `summary()` returns an `EscalationSummary`.
- `acknowledge` and `resolve` update an entry and log it again.

Failures raise `EscalationError`.

### `architect.questions`

`QuestionHandler(llm_client, renderer, queue, escalation_handler)`.
`handle_question(message_id, from_agent, payload)` reads `story_id` and
`question` from the payload. If those are missing, it reads the story id from a
front-matter block in `question` and uses `reason` as the question.

- Business questions, detected by `is_business_question`, are escalated.
- Other questions are answered through `llm_client.generate_response(prompt)`,
  using a prompt rendered with `renderer.render("technical_qa", data)`.
- Without a client, a fixed mock answer is used.

A bad message raises `QuestionError`. `question_status()` and
`clear_answered_questions()` report on and prune tracked questions.

### `architect.checks`

`run_make_check(check_type, work_dir)` runs the first available make target for
a check:

- `format`: `format`, then `fmt`
- `lint`: `lint`, then `check`
- `test`: `test`, then `tests`

It raises `CheckError` if the target fails. It passes if no target exists.

`run_llm_tool_invocation` works with an LLM:

1. It describes the workspace with `format_tool_invocation_context`.
2. It asks the LLM which command to run.
3. It runs the first `make ...` line of the reply with `execute_llm_tool_response`.

### `architect.review`

`ReviewEvaluator(llm_client, renderer, queue, workspace_dir, escalation_handler)`
handles code submissions. `handle_result(message_id, from_agent, payload)`
records the submission, then:

1. It runs the format, lint and test checks, in the payload's `workspace_dir`
   if one is given.
2. If any check failed, it requests fixes. The story moves to `waiting_review`
   and the feedback comes from `generate_fix_feedback`.
3. If all checks passed, it asks the LLM for a review, rendered with
   `renderer.render("code_review", data)`. Without a client it approves
   directly.

`process_llm_review_response` reads the review text:

- "approved", "looks good" or "lgtm" approve the submission and complete the
  story.
- Any other reply requests fixes.
- A third rejection escalates to a human instead.

Failures raise `ReviewError`.

## Example

```python
from architect.queue import Queue
from architect.spec import SpecParser

stories = SpecParser("stories").process_spec_file("project.md")

queue = Queue("stories")
queue.load_from_directory()
story = queue.next_ready_story()
if story is not None:
    queue.mark_in_progress(story.id, "agent-1")
```

## What it does not do

- There is no command-line program; the package is used as a library.
- No LLM client and no prompt templates are included. Callers supply:
  - an object with `generate_response(prompt)`;
  - a renderer with `render(template_name, data)` that knows the
    `technical_qa` and `code_review` templates.
- Replies to agents are not delivered anywhere. Answer and review-result
  messages are built as dictionaries and appended to the handler's
  `sent_messages` list for the caller to dispatch.
- The queue's state is kept in memory. It is saved only if the caller stores
  the output of `to_json()`.

## Tests

```
pytest
```
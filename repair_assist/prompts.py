"""
Prompt templates for the diagnosis providers
Note: All JSON example braces are doubled ({{ }}) to escape them for .format()
"""


SYSTEM_PROMPT = """You are an experienced electronics repair technician helping a user diagnose a malfunctioning {category}.
Base your answer only on the information provided. If something cannot be determined, say so in the explanation instead of guessing.
Always include safety warnings when the repair involves mains voltage, batteries, capacitors or heat.
"""

DIAGNOSIS_JSON_SHAPE = """{{
  "problem": "short name of the most likely problem",
  "explanation": "why this is the likely cause, referencing the symptoms",
  "repairSteps": ["step 1", "step 2", "..."],
  "toolsNeeded": ["tool 1", "tool 2"],
  "estimatedCost": "e.g. $20-60",
  "difficulty": "Beginner|Intermediate|Advanced",
  "successRate": "e.g. 70-80%",
  "timeRequired": "e.g. 1-2 hours",
  "safetyWarnings": ["warning 1"]
}}"""

DIRECT_DIAGNOSIS_PROMPT = """Diagnose the following {category} problem.

Problem description:
{description}

Clarifying questions already answered by the user:
{formatted_answers}

Image analysis:
{formatted_image_analysis}

Description analysis:
{formatted_description_analysis}

{image_note}

Respond with ONLY a JSON object in exactly this format, no prose and no markdown:
""" + DIAGNOSIS_JSON_SHAPE + """

Rules:
- repairSteps must contain at least one concrete step, ordered from safest/simplest to most involved.
- toolsNeeded may be an empty list if no tools are required.
"""

SEARCH_SUMMARY_PROMPT = """A user needs help repairing a {category}.

Problem description:
{description}

Clarifying questions already answered by the user:
{formatted_answers}

Web search results about this problem:
{formatted_results}

Using the search results above together with your own repair knowledge, produce a single diagnosis.
Prefer fixes that more than one result agrees on. Do not invent part numbers.

Respond with ONLY a JSON object in exactly this format, no prose and no markdown:
""" + DIAGNOSIS_JSON_SHAPE + """
"""

SEARCH_QUERY_TEMPLATE = "{category} repair {description} troubleshooting fix"

PROBLEM_JSON_SHAPE = """{{
      "label": "short problem name",
      "reasoning": "what in the evidence points to it",
      "confidence": "high|medium|low"
    }}"""

IMAGE_ANALYSIS_PROMPT = """Inspect the attached photo(s) of a malfunctioning {category}.

Look systematically for:
- physical damage: cracks, dents, broken or bent parts
- missing, loose or disconnected components, wires, connectors or screws
- dust, corrosion or residue
- heat damage: burn marks, melted plastic, discoloration, bulging capacitors
- misaligned parts or anything else that looks abnormal

List every plausible problem, most likely first, each with a concise label, the visual evidence
and a confidence level. Then write five short questions whose answers would best narrow the diagnosis.

Respond with ONLY a JSON object in exactly this format, no prose and no markdown:
{{
  "problems": [
    """ + PROBLEM_JSON_SHAPE + """
  ],
  "visualObservations": "what is clearly visible in the photos",
  "clarifyingQuestions": ["question 1?", "question 2?", "question 3?", "question 4?", "question 5?"]
}}
"""

DESCRIPTION_ANALYSIS_PROMPT = """A user describes a problem with their {category}.

Description (ignore typos, capitalization and formatting):
{description}

Earlier photo analysis:
{formatted_image_analysis}

Identify the symptoms, any timing or pattern, and anything the user did that may have caused it.
Cross-check against the photo analysis where one is available, then refine the candidate problems
and ask three follow-up questions that the description leaves open.

Respond with ONLY a JSON object in exactly this format, no prose and no markdown:
{{
  "refinedProblems": [
    """ + PROBLEM_JSON_SHAPE + """
  ],
  "additionalQuestions": ["question 1?", "question 2?", "question 3?"],
  "keySymptoms": ["symptom 1", "symptom 2"],
  "analysisNotes": "one or two sentences on what the description reveals"
}}
"""

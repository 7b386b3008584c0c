"""Conversational Booking Orchestrator: a Vietnamese hospital booking assistant.

Architecture Overview
=====================

Every user turn goes through a fixed pipeline (``orchestrator.py``):

1. **Spam & relevance gate**: content score (off-topic similarity, spam
   patterns, length) blended with a per-session request-rate score.
   Suspicious or spam turns get a canned reply with no model call.
2. **Semantic cache**: near-identical generic questions reuse a stored
   answer; anything carrying personal or scheduling data never does.
3. **Intent router**: a small Claude model picks one of four intents, with a
   keyword fallback.
4. **Slot-selection short-circuit**: "L01" after a slot list books directly.
5. **Agent loop** (``agent.py``): a LangGraph ``model -> tools -> model``
   graph with the intent's tool subset bound, capped at 10 iterations, each
   tool call run with a timeout.
6. **State patch & cache write-back**.

Key Design Decisions
--------------------
- **Slot booking** is a compare-and-swap claim on the schedule store
  (in-process lock or a conditional Supabase update) followed by appointment
  creation, with the claim released on failure.
- **Identity** never comes from the model: tools receive the session id and
  look up the bound user themselves, returning ``AUTHENTICATION_REQUIRED``
  when there is none.
- **Vectors**: Google ``text-embedding-004`` embeddings in five Qdrant
  collections.

Package Structure
-----------------
- ``booking_orchestrator/orchestrator.py``: turn pipeline
- ``booking_orchestrator/agent.py``: LangGraph tool-calling loop
- ``booking_orchestrator/container.py``: wiring from config and seed data
- ``booking_orchestrator/config.py``: configuration from env / SSM
- ``booking_orchestrator/prompts.py``: per-intent system prompts
- ``booking_orchestrator/server.py``: FastAPI application
- ``booking_orchestrator/main.py``: CLI chat interface
- ``booking_orchestrator/services/``: filters, stores and catalog lookups
- ``booking_orchestrator/tools/``: LangChain tools
- ``booking_orchestrator/api/``: FastAPI routes and Pydantic schemas
"""

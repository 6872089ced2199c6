from __future__ import annotations

from pathlib import Path

import allure

from genbatch.jobs_csv import compose_input, load_jobs_csv, parse_jobs_csv
from genbatch.models import Job

pytestmark = [
    allure.epic("Batch Generation"),
    allure.feature("Job Import"),
]


def test_header_row_maps_named_columns() -> None:
    text = "Style,Scene,Context\nwatercolor,A red fox,Snowy forest\n"

    assert parse_jobs_csv(text) == [Job(index=1, input="A red fox. Snowy forest. watercolor")]


def test_rows_without_header_are_positional() -> None:
    text = "A red fox,Snowy forest,watercolor\nAn owl,,ink\n"

    assert parse_jobs_csv(text) == [
        Job(index=1, input="A red fox. Snowy forest. watercolor"),
        Job(index=2, input="An owl. ink"),
    ]


def test_prompt_column_is_used_verbatim() -> None:
    text = 'prompt,scene\n"A fox, running",ignored\n'

    assert parse_jobs_csv(text) == [Job(index=1, input="A fox, running")]


def test_blank_rows_are_skipped_and_indices_stay_contiguous() -> None:
    text = "scene\nfirst\n\n , \nsecond\n"

    jobs = parse_jobs_csv(text)

    assert [job.index for job in jobs] == [1, 2]
    assert [job.input for job in jobs] == ["first", "second"]


def test_empty_input_yields_no_jobs() -> None:
    assert parse_jobs_csv("") == []
    assert parse_jobs_csv("scene,context,style\n") == []


def test_load_strips_byte_order_mark(tmp_path: Path) -> None:
    path = tmp_path / "jobs.csv"
    path.write_bytes("\ufeffscene\nA red fox\n".encode())

    assert load_jobs_csv(path) == [Job(index=1, input="A red fox")]


def test_compose_input_skips_empty_parts() -> None:
    assert compose_input({"scene": " ", "context": "Snowy forest", "style": ""}) == "Snowy forest"


def test_data_row_mentioning_a_column_word_is_not_a_header() -> None:
    text = "A cat on a roof,sunset,watercolor style\nAn owl,Night sky,ink\n"

    assert parse_jobs_csv(text) == [
        Job(index=1, input="A cat on a roof. sunset. watercolor style"),
        Job(index=2, input="An owl. Night sky. ink"),
    ]


def test_partially_labelled_header_falls_back_to_positions() -> None:
    text = "Scene Description,Context,Art Style\nA cat,sunset,watercolor\n"

    assert parse_jobs_csv(text) == [Job(index=1, input="A cat. sunset. watercolor")]


def test_qualified_labels_still_map_by_name() -> None:
    text = "Style Notes,Scene Description\nink,An owl\n"

    assert parse_jobs_csv(text) == [Job(index=1, input="An owl. ink")]

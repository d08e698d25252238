#!/usr/bin/env python3
"""
Evaluation Submission Concurrency Harness

Fires concurrent evaluation submissions at a running server: every listed
evaluator submits the same evaluation --repeat times at once. Exactly one
201 per evaluator is expected, every other attempt a 409.

Usage:
    python -m defense_eval.cli db seed-demo --rooms 1 --projects 1 --evaluators 3
    python scripts/concurrency_harness.py --defense 1 --project 1 --room 1 \\
        --evaluators 1,2,3 --repeat 10 --payload-file evaluation.json
"""
import asyncio
import argparse
import json
import time
import sys
from typing import List, Dict, Any, Optional
from dataclasses import dataclass, asdict
from pathlib import Path

import aiohttp

ENDPOINT = "/api/evaluator/evaluations"


@dataclass
class SubmissionResult:
    """Result from a single concurrent submission."""
    request_id: int
    evaluator_id: int
    status_code: int
    response_time_ms: float
    code: Optional[str] = None
    error: Optional[str] = None


@dataclass
class HarnessSummary:
    total_requests: int
    accepted: int
    duplicates: int
    conflicts: int
    retryable: int
    avg_response_time_ms: float
    max_response_time_ms: float
    status_code_distribution: Dict[int, int]
    accepted_per_evaluator: Dict[int, int]
    errors: List[str]
    race_conditions_detected: bool
    timestamp: str


def build_payload(template: Dict[str, Any], args, evaluator_id: int) -> Dict[str, Any]:
    payload = dict(template)
    payload.update(
        projectId=args.project,
        evaluatorId=evaluator_id,
        defenseId=args.defense,
        eventId=args.event,
        evaluationType=args.type,
        roomId=args.room,
    )
    return payload


class ConcurrencyHarness:
    """Harness for executing concurrent evaluation submissions."""

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip('/')
        self.results: List[SubmissionResult] = []

    async def _submit(
        self,
        session: aiohttp.ClientSession,
        request_id: int,
        evaluator_id: int,
        payload: Dict[str, Any]
    ) -> SubmissionResult:
        start_time = time.time()

        try:
            async with session.post(f"{self.base_url}{ENDPOINT}", json=payload) as response:
                response_time = (time.time() - start_time) * 1000
                try:
                    body = await response.json()
                except (aiohttp.ContentTypeError, json.JSONDecodeError):
                    body = {}

                return SubmissionResult(
                    request_id=request_id,
                    evaluator_id=evaluator_id,
                    status_code=response.status,
                    response_time_ms=response_time,
                    code=body.get("code"),
                )

        except aiohttp.ClientError as e:
            return SubmissionResult(
                request_id=request_id,
                evaluator_id=evaluator_id,
                status_code=0,
                response_time_ms=(time.time() - start_time) * 1000,
                error=str(e),
            )

    async def run(self, payloads: Dict[int, Dict[str, Any]], repeat: int) -> HarnessSummary:
        """Submit every evaluator's payload `repeat` times concurrently."""
        async with aiohttp.ClientSession(headers={'Accept': 'application/json'}) as session:
            tasks = []
            request_id = 0
            for _ in range(repeat):
                for evaluator_id, payload in payloads.items():
                    tasks.append(self._submit(session, request_id, evaluator_id, payload))
                    request_id += 1

            self.results = await asyncio.gather(*tasks)

        return self.summary()

    def summary(self) -> HarnessSummary:
        total = len(self.results)
        response_times = [r.response_time_ms for r in self.results]

        status_dist: Dict[int, int] = {}
        accepted_per_evaluator: Dict[int, int] = {}
        for r in self.results:
            status_dist[r.status_code] = status_dist.get(r.status_code, 0) + 1
            if r.status_code == 201:
                accepted_per_evaluator[r.evaluator_id] = accepted_per_evaluator.get(r.evaluator_id, 0) + 1

        return HarnessSummary(
            total_requests=total,
            accepted=status_dist.get(201, 0),
            duplicates=sum(1 for r in self.results if r.code == "DUPLICATE_SUBMISSION"),
            conflicts=sum(1 for r in self.results if r.code == "CONFLICT_DETECTED"),
            retryable=status_dist.get(503, 0),
            avg_response_time_ms=sum(response_times) / total if total else 0,
            max_response_time_ms=max(response_times) if response_times else 0,
            status_code_distribution=status_dist,
            accepted_per_evaluator=accepted_per_evaluator,
            errors=sorted({r.error for r in self.results if r.error}),
            # More than one 201 for a single evaluator slot means the gate leaked
            race_conditions_detected=any(count > 1 for count in accepted_per_evaluator.values()),
            timestamp=time.strftime('%Y-%m-%dT%H:%M:%SZ'),
        )

    def save_results(self, output_dir: str, test_name: str) -> str:
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        with open(output_path / f"{test_name}_detailed.json", 'w') as f:
            json.dump([asdict(r) for r in self.results], f, indent=2)

        summary_file = output_path / f"{test_name}_summary.json"
        with open(summary_file, 'w') as f:
            json.dump(asdict(self.summary()), f, indent=2)

        return str(summary_file)


def main():
    parser = argparse.ArgumentParser(description='Evaluation submission concurrency harness')
    parser.add_argument('--defense', type=int, required=True, help='Defense id')
    parser.add_argument('--project', type=int, required=True, help='Project id')
    parser.add_argument('--room', type=int, required=True, help='Room id')
    parser.add_argument('--event', type=int, default=1, help='Event id (default: 1)')
    parser.add_argument('--evaluators', required=True, help='Comma separated evaluator ids')
    parser.add_argument('--type', default='proposal', choices=['proposal', 'mid', 'final'])
    parser.add_argument('--repeat', '-r', type=int, default=10, help='Submissions per evaluator')
    parser.add_argument(
        '--payload-file', '-p',
        required=True,
        help='JSON file with individualEvaluation and projectEvaluation'
    )
    parser.add_argument('--base-url', '-u', default='http://localhost:8000')
    parser.add_argument('--output-dir', '-o', default='./artifacts/concurrency')
    parser.add_argument('--test-name', default='submission_race')

    args = parser.parse_args()

    try:
        template = json.loads(Path(args.payload_file).read_text())
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: cannot read payload file: {e}")
        sys.exit(1)

    evaluator_ids = [int(part) for part in args.evaluators.split(",") if part.strip()]
    payloads = {evaluator_id: build_payload(template, args, evaluator_id) for evaluator_id in evaluator_ids}

    harness = ConcurrencyHarness(args.base_url)

    print("=== Evaluation Submission Concurrency Harness ===")
    print(f"Defense {args.defense}, project {args.project}, evaluators {evaluator_ids}")
    print(f"Submissions per evaluator: {args.repeat}")
    print("")

    start_time = time.time()
    summary = asyncio.run(harness.run(payloads, args.repeat))
    print(f"Completed in {time.time() - start_time:.2f}s\n")

    print("=== Results ===")
    print(f"Total requests: {summary.total_requests}")
    print(f"Accepted (201): {summary.accepted}")
    print(f"Duplicate (409): {summary.duplicates}")
    print(f"Conflict (409): {summary.conflicts}")
    print(f"Retryable (503): {summary.retryable}")
    print(f"Avg response time: {summary.avg_response_time_ms:.2f}ms")
    print(f"Max response time: {summary.max_response_time_ms:.2f}ms")
    print("")
    print("Status code distribution:")
    for code, count in sorted(summary.status_code_distribution.items()):
        print(f"  {code}: {count}")

    if summary.race_conditions_detected:
        print("\n⚠️  RACE CONDITIONS DETECTED!")
        for evaluator_id, count in sorted(summary.accepted_per_evaluator.items()):
            if count > 1:
                print(f"  evaluator {evaluator_id}: {count} accepted submissions")

    if summary.errors:
        print(f"\nErrors ({len(summary.errors)}):")
        for error in summary.errors[:5]:
            print(f"  - {error}")

    results_path = harness.save_results(args.output_dir, args.test_name)
    print(f"\nResults saved: {results_path}")

    sys.exit(1 if summary.race_conditions_detected else 0)


if __name__ == "__main__":
    main()

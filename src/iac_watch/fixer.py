"""Fix synthesizer.

Computes deterministic text edits for diagnostics: either the fixed
definition suggested by the engine or a fix from the known rule table.
"""

import re
from typing import Optional

from iac_watch.models import Diagnostic, TextEdit

# Fix mappings for known rules, keyed by Checkov rule ID
IAC_FIXES = {
    # S3 Bucket Rules
    "CKV_AWS_20": {  # S3 bucket with public access
        "pattern": r'acl\s*=\s*"public-read(?:-write)?"',
        "replacement": 'acl = "private"',
        "explanation": "Change S3 bucket ACL from public to private",
    },
    "CKV_AWS_19": {  # S3 bucket without encryption - handled via additions
        "skip": True,
        "explanation": "Add server-side encryption configuration to S3 bucket",
    },
    # Security Group Rules
    "CKV_AWS_23": {  # Security group allows unrestricted ingress
        "pattern": r'cidr_blocks\s*=\s*\[\s*"0\.0\.0\.0/0"\s*\]',
        "replacement": 'cidr_blocks = ["10.0.0.0/8"]  # Restrict to your IP range',
        "explanation": "Restrict security group ingress to a private IP range",
    },
    # RDS Rules
    "CKV_AWS_16": {  # RDS instance without encryption
        "pattern": r'(resource\s+"aws_db_instance"\s+"[^"]+"\s*\{)',
        "replacement": r'\1\n  storage_encrypted = true',
        "explanation": "Enable storage encryption for RDS instance",
        "multiline": True,
        "check_pattern": r'storage_encrypted\s*=',
    },
    # EBS Rules
    "CKV_AWS_3": {  # EBS volume without encryption
        "pattern": r'encrypted\s*=\s*false',
        "replacement": 'encrypted = true',
        "explanation": "Enable EBS volume encryption",
    },
    # CloudTrail Rules
    "CKV_AWS_67": {  # CloudTrail not logging all regions
        "pattern": r'is_multi_region_trail\s*=\s*false',
        "replacement": 'is_multi_region_trail = true',
        "explanation": "Enable multi-region CloudTrail logging",
    },
    # KMS Rules
    "CKV_AWS_7": {  # KMS key rotation disabled
        "pattern": r'enable_key_rotation\s*=\s*false',
        "replacement": 'enable_key_rotation = true',
        "explanation": "Enable KMS key rotation",
    },
}

# Additional patterns for adding missing configurations
IAC_ADDITIONS = {
    "CKV_AWS_19": {  # S3 bucket without encryption - add block if not present
        "resource_type": "aws_s3_bucket",
        "check_pattern": r'server_side_encryption_configuration',
        "add_block": '''  server_side_encryption_configuration {
    rule {
      apply_server_side_encryption_by_default {
        sse_algorithm = "AES256"
      }
    }
  }''',
        "explanation": "Add server-side encryption configuration to S3 bucket",
    },
    "CKV_AWS_3": {  # EBS volume - add encrypted = true if not present
        "resource_type": "aws_ebs_volume",
        "check_pattern": r'encrypted\s*=',
        "add_block": '  encrypted = true',
        "explanation": "Add encryption setting to EBS volume",
    },
    "CKV_AWS_7": {  # KMS key - add rotation if not present
        "resource_type": "aws_kms_key",
        "check_pattern": r'enable_key_rotation\s*=',
        "add_block": '  enable_key_rotation = true',
        "explanation": "Add key rotation to KMS key",
    },
}


class FixSynthesizer:
    """Computes quick fixes for diagnostics."""

    def __init__(self):
        self.fixes = IAC_FIXES
        self.additions = IAC_ADDITIONS

    def synthesize_fix(self, diagnostic: Diagnostic, document_text: str) -> Optional[TextEdit]:
        """Compute an edit that resolves the diagnostic.

        The diagnostic's anchor text must still be present at the same lines
        of document_text, otherwise no fix is returned.

        Args:
            diagnostic: The diagnostic to fix.
            document_text: Current text of the document.

        Returns:
            The edit, or None if no deterministic fix applies.
        """
        lines = document_text.split("\n")
        if diagnostic.end_line > len(lines):
            return None
        anchor = "\n".join(lines[diagnostic.start_line - 1 : diagnostic.end_line])
        if anchor != diagnostic.anchor_text:
            return None

        suggested = diagnostic.finding.suggested_fix
        if suggested:
            return TextEdit(
                start_line=diagnostic.start_line,
                start_character=0,
                end_line=diagnostic.end_line,
                end_character=len(lines[diagnostic.end_line - 1]),
                new_text=suggested.rstrip("\n"),
                title=f"Apply suggested fix for {diagnostic.rule_id}",
            )

        edit = self._pattern_fix(diagnostic, anchor)
        if edit is None:
            edit = self._addition_fix(diagnostic, lines)
        return edit

    def _pattern_fix(self, diagnostic: Diagnostic, anchor: str) -> Optional[TextEdit]:
        fix_info = self.fixes.get(diagnostic.rule_id)
        if not fix_info or fix_info.get("skip"):
            return None

        check_pattern = fix_info.get("check_pattern")
        if check_pattern and re.search(check_pattern, anchor, re.IGNORECASE):
            return None

        flags = re.IGNORECASE | re.MULTILINE
        if fix_info.get("multiline"):
            flags |= re.DOTALL

        match = re.compile(fix_info["pattern"], flags).search(anchor)
        if not match:
            return None

        start_line, start_character = _position(anchor, match.start(), diagnostic.start_line)
        end_line, end_character = _position(anchor, match.end(), diagnostic.start_line)
        return TextEdit(
            start_line=start_line,
            start_character=start_character,
            end_line=end_line,
            end_character=end_character,
            new_text=match.expand(fix_info["replacement"]),
            title=fix_info["explanation"],
        )

    def _addition_fix(self, diagnostic: Diagnostic, lines: list[str]) -> Optional[TextEdit]:
        add_info = self.additions.get(diagnostic.rule_id)
        if not add_info:
            return None

        if re.search(add_info["check_pattern"], diagnostic.anchor_text, re.IGNORECASE):
            return None

        # The resource block starts inside the diagnostic; its closing brace
        # may lie past the reported range.
        content = "\n".join(lines[diagnostic.start_line - 1 :])
        resource_start_pattern = rf'resource\s+"{re.escape(add_info["resource_type"])}"\s+"[^"]+"\s*\{{'
        match = re.search(resource_start_pattern, content)
        if not match or match.start() > len(diagnostic.anchor_text):
            return None

        # Find the matching closing brace
        brace_count = 1
        pos = match.end()
        while pos < len(content) and brace_count > 0:
            if content[pos] == '{':
                brace_count += 1
            elif content[pos] == '}':
                brace_count -= 1
            pos += 1
        if brace_count != 0:
            return None

        insert_pos = pos - 1
        prefix = "" if content[:insert_pos].endswith("\n") else "\n"
        line, character = _position(content, insert_pos, diagnostic.start_line)
        return TextEdit(
            start_line=line,
            start_character=character,
            end_line=line,
            end_character=character,
            new_text=prefix + add_info["add_block"] + "\n",
            title=add_info["explanation"],
        )

    def available_fixes(self) -> list[str]:
        """Get list of rule IDs that have table fixes."""
        fixable = {rule for rule, info in self.fixes.items() if not info.get("skip")}
        return sorted(fixable | set(self.additions.keys()))

    def has_fix(self, rule_id: str) -> bool:
        """Check if a table fix is available for a rule."""
        return rule_id in self.available_fixes()


def _position(text: str, offset: int, first_line: int) -> tuple[int, int]:
    """Convert an offset in text to a (line, character) pair."""
    before = text[:offset]
    line = first_line + before.count("\n")
    character = offset - (before.rfind("\n") + 1)
    return line, character

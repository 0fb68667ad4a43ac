import unittest

from fetch_zotero_bibtex import BibRewriter


class TestBibRewriter(unittest.TestCase):
    """
    Tests the BibRewriter passes, one at a time and together.
    """

    def test_rewrite_keys_and_types(self) -> None:
        """
        Checks that pinned keys and mapped types replace the server's, and that unknowns fall back.
        """
        raw_bib: str = (
            '@misc{KEY1,\n  title = {One},\n}\n'
            '@book{KEY2,\n  title = {Two},\n}\n'
            '@misc{KEY3,\n  title = {Three},\n}\n'
        )
        rewriter = BibRewriter(
            raw_bib,
            pinned_keys={'KEY1': 'Smith2020'},
            type_hints={'KEY1': 'article-journal', 'KEY2': 'chapter', 'KEY3': 'song'},
        )
        rewriter.rewrite_keys_and_types()
        expected: str = (
            '@article{Smith2020,\n  title = {One},\n}\n'
            '@incollection{KEY2,\n  title = {Two},\n}\n'
            '@misc{KEY3,\n  title = {Three},\n}\n'
        )
        self.assertEqual(rewriter.bib, expected)

    def test_rewrite_without_hints_keeps_header(self) -> None:
        """
        Checks that a header with no pin and no type hint comes out unchanged.
        """
        rewriter = BibRewriter('@article{ABCD1234,\n}\n')
        rewriter.rewrite_keys_and_types()
        self.assertEqual(rewriter.bib, '@article{ABCD1234,\n}\n')

    def test_rename_journal_fields_is_unconditional(self) -> None:
        """
        Checks that `journal` becomes `organization` for every entry-type, in any case.
        """
        rewriter = BibRewriter('@article{K1,\n  journal = {Nature},\n  JOURNAL={Science},\n}\n')
        rewriter.rename_journal_fields()
        self.assertEqual(rewriter.bib, '@article{K1,\n  organization = {Nature},\n  organization = {Science},\n}\n')

    def test_rename_journal_leaves_other_fields(self) -> None:
        """
        Checks that fields merely ending in `journal` are left alone.
        """
        rewriter = BibRewriter('  shortjournal = {Nat.},\n')
        rewriter.rename_journal_fields()
        self.assertEqual(rewriter.bib, '  shortjournal = {Nat.},\n')

    def test_protect_acronyms(self) -> None:
        """
        Checks that 2+ capital runs get double braces, and that single capitals are ignored.
        """
        rewriter = BibRewriter('  title = {The NASA Program},\n  note = {See NASA},\n  series = {A New Approach},\n')
        rewriter.protect_acronyms()
        expected: str = '  title = {The {{NASA}} Program},\n  note = {See NASA},\n  series = {A New Approach},\n'
        self.assertEqual(rewriter.bib, expected)

    def test_protect_acronyms_booktitle_once(self) -> None:
        """
        Checks that `booktitle` is protected once, not also by the `title` pass.
        """
        rewriter = BibRewriter('  booktitle = {Proceedings of the ACM},\n  number = {TR 12},\n')
        rewriter.protect_acronyms()
        self.assertEqual(rewriter.bib, '  booktitle = {Proceedings of the {{ACM}}},\n  number = {{{TR}} 12},\n')

    def test_protect_acronyms_skips_mixed_case(self) -> None:
        """
        Checks that capitals inside a longer word are not protected.
        """
        rewriter = BibRewriter('  title = {Using LaTeX and NASAs Data},\n')
        rewriter.protect_acronyms()
        self.assertEqual(rewriter.bib, '  title = {Using LaTeX and NASAs Data},\n')

    def test_clean_type_fields(self) -> None:
        """
        Checks that nested braces are stripped, keeping indentation and trailing comma.
        """
        rewriter = BibRewriter('@report{K1,\n  type = {Policy {Contribution}},\n  title = {X},\n}\n')
        rewriter.clean_type_fields()
        self.assertEqual(rewriter.bib, '@report{K1,\n  type = {Policy Contribution},\n  title = {X},\n}\n')

    def test_clean_type_fields_collapses_whitespace(self) -> None:
        """
        Checks that whitespace runs collapse and the value is trimmed; a last field without comma is fine.
        """
        rewriter = BibRewriter('@thesis{K1,\n\tTYPE={  {PhD}   thesis }\n}\n')
        rewriter.clean_type_fields()
        self.assertEqual(rewriter.bib, '@thesis{K1,\n\ttype = {PhD thesis}\n}\n')

    def test_clean_type_fields_ignores_other_fields(self) -> None:
        """
        Checks that fields like `entrysubtype` and text mentioning type are not touched.
        """
        raw_bib: str = '  entrysubtype = {{A} {B}},\n  note = {type = {x}},\n'
        rewriter = BibRewriter(raw_bib)
        rewriter.clean_type_fields()
        self.assertEqual(rewriter.bib, raw_bib)

    def test_manage_rewriting_end_to_end(self) -> None:
        """
        Checks the full pipeline on a pinned webpage entry.
        """
        raw_bib: str = '@webpage{KEY1,\n  title = {An HTML Guide},\n  journal = {Web},\n}\n'
        rewriter = BibRewriter(raw_bib, pinned_keys={'KEY1': 'Pinned1'}, type_hints={'KEY1': 'webpage'})
        computed: str = rewriter.manage_rewriting()
        expected: str = '@online{Pinned1,\n  title = {An {{HTML}} Guide},\n  organization = {Web},\n}\n'
        self.assertEqual(computed, expected)
        self.assertEqual(rewriter.raw_bib, raw_bib)


if __name__ == '__main__':
    unittest.main()
